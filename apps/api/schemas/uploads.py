from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    url: str
    filename: str
    file_type: str = Field(..., alias="fileType")
    teacher_id: str = Field(..., alias="teacherId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    message_id: Optional[str] = Field(default=None, alias="messageId")
    processing_time: int = Field(..., alias="processingTime", description="Milliseconds spent in the upload flow")
    size: int
    status: str
    storage_key: str = Field(..., alias="storageKey")
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailUrl")
    warnings: List[str] = Field(default_factory=list, description="Non-fatal processing errors")


class ErrorResponse(BaseModel):
    error: str
    code: str
