from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from apps.api.deps.deps import Services, get_services
from apps.api.schemas.storage import (
    StorageCapabilities,
    StorageInfoResponse,
    StorageLimits,
    StorageMetricsResponse,
    StorageUsageResponse,
)
from packages.common.errors import MissingTeacherIdError


router = APIRouter(prefix="/api/storage", tags=["storage"])


@router.get("/info", response_model=StorageInfoResponse)
def storage_info(response: Response, services: Services = Depends(get_services)) -> StorageInfoResponse:
    settings = services.settings
    primary = services.storage.primary
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return StorageInfoResponse(
        provider=primary.backend,
        # selection fails at startup otherwise
        configured=True,
        details=primary.describe(),
        capabilities=StorageCapabilities(
            signed_urls=primary.backend != "local",
            thumbnails=True,
            monitoring=services.monitor.enabled,
        ),
        limits=StorageLimits(
            max_file_size_mb=settings.max_file_size_mb,
            max_storage_per_teacher_gb=settings.max_storage_per_teacher_gb,
            allowed_types=settings.allowed_type_patterns,
        ),
        environment=settings.environment,
    )


@router.get("/usage", response_model=StorageUsageResponse)
async def storage_usage(
    teacher_id: Optional[str] = Query(default=None, alias="teacherId"),
    services: Services = Depends(get_services),
) -> StorageUsageResponse:
    if not teacher_id:
        raise MissingTeacherIdError()
    count, total = await asyncio.to_thread(services.repository.usage_for_teacher, teacher_id)
    quota = services.settings.max_storage_per_teacher_bytes
    return StorageUsageResponse(
        teacher_id=teacher_id,
        total_files=count,
        total_size=total,
        percent_used=round(100.0 * total / quota, 2) if quota else 0.0,
        remaining_space=max(quota - total, 0),
    )


@router.get("/metrics", response_model=StorageMetricsResponse)
def storage_metrics(response: Response, services: Services = Depends(get_services)) -> StorageMetricsResponse:
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
    return StorageMetricsResponse.model_validate(services.monitor.summary())
