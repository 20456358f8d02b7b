from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class StorageCapabilities(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upload: bool = True
    download: bool = True
    delete: bool = True
    signed_urls: bool = Field(..., alias="signedUrls")
    thumbnails: bool = True
    monitoring: bool


class StorageLimits(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_file_size_mb: int = Field(..., alias="maxFileSizeMb")
    max_storage_per_teacher_gb: int = Field(..., alias="maxStoragePerTeacherGb")
    allowed_types: List[str] = Field(..., alias="allowedTypes")


class StorageInfoResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    configured: bool
    details: Dict[str, Any]
    capabilities: StorageCapabilities
    limits: StorageLimits
    environment: str


class StorageUsageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    teacher_id: str = Field(..., alias="teacherId")
    total_files: int = Field(..., alias="totalFiles")
    total_size: int = Field(..., alias="totalSize")
    percent_used: float = Field(..., alias="percentUsed")
    remaining_space: int = Field(..., alias="remainingSpace")


class OperationCounts(BaseModel):
    count: int
    errors: int


class StorageMetricsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool
    total_operations: int = Field(..., alias="totalOperations")
    error_rate: float = Field(..., alias="errorRate")
    avg_response_time_ms: float = Field(..., alias="avgResponseTimeMs")
    by_operation: Dict[str, OperationCounts] = Field(..., alias="byOperation")
    status: str
