from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from apps.api.deps.deps import get_orchestrator
from apps.api.schemas.uploads import ErrorResponse, UploadResponse
from apps.api.services.uploads import UploadOrchestrator
from packages.common.errors import MissingFileError, MissingTeacherIdError
from packages.validation.validator import UploadRequest


router = APIRouter(prefix="/api", tags=["files"])

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@router.post(
    "/upload",
    response_model=UploadResponse,
    responses={400: {"model": ErrorResponse}, 413: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def upload(
    file: Optional[UploadFile] = File(default=None),
    teacher_id: Optional[str] = Form(default=None, alias="teacherId"),
    session_id: Optional[str] = Form(default=None, alias="sessionId"),
    message_id: Optional[str] = Form(default=None, alias="messageId"),
    orchestrator: UploadOrchestrator = Depends(get_orchestrator),
) -> UploadResponse:
    if file is None or not file.filename:
        raise MissingFileError()
    if not teacher_id or not teacher_id.strip():
        raise MissingTeacherIdError()

    data = await file.read()
    request = UploadRequest(
        data=data,
        filename=file.filename,
        content_type=file.content_type or DEFAULT_CONTENT_TYPE,
        owner_id=teacher_id.strip(),
        session_id=session_id or None,
        message_id=message_id or None,
    )
    outcome = await orchestrator.upload(request)

    record = outcome.record
    thumbnail = outcome.thumbnail
    return UploadResponse(
        id=record.id,
        url=record.url,
        filename=record.filename,
        file_type=record.content_type,
        teacher_id=record.teacher_id,
        session_id=record.session_id,
        message_id=record.message_id,
        processing_time=outcome.processing_time_ms,
        size=record.size,
        status=record.status,
        storage_key=record.storage_key,
        thumbnail_url=thumbnail.url if thumbnail else None,
        warnings=outcome.processing.processing_errors,
    )
