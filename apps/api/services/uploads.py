from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from apps.api.db.models import FileRecord, FileStatus, can_transition
from apps.api.services.records import FileRecordRepository
from packages.common.errors import (
    InvalidStatusTransitionError,
    PersistenceError,
    ProcessingError,
    QuotaExceededError,
    StorageError,
    UploadRejectedError,
)
from packages.common.monitoring import StorageMonitor
from packages.processing.processor import FileProcessor, ProcessingOptions, ProcessingResult
from packages.storage.base import StorageAdapter, StoredFileDescriptor, build_storage_key, build_thumbnail_key
from packages.validation.validator import UploadPolicy, UploadRequest, validate


logger = logging.getLogger(__name__)

THUMBNAIL_CONTENT_TYPE = "image/jpeg"


class UploadState(str, enum.Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    STORED = "stored"
    PROCESSED = "processed"
    RECORDED = "recorded"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class UploadOutcome:
    record: FileRecord
    descriptor: StoredFileDescriptor
    processing: ProcessingResult
    state: UploadState
    processing_time_ms: int
    thumbnail: Optional[StoredFileDescriptor] = None


def advance_status(record: FileRecord, new_status: FileStatus) -> None:
    current = FileStatus(record.status)
    if not can_transition(current, new_status):
        raise InvalidStatusTransitionError(f"{current.value} -> {new_status.value} not allowed")
    record.status = new_status.value


class UploadOrchestrator:
    """Runs one upload as validate -> store -> process -> record.

    Storage and the record database share no transaction, so a failed (or
    cancelled) upload is compensated by deleting every key it stored. Keys
    are tracked as soon as a write lands, even when the upload is cancelled
    while the write is still in flight.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        processor: FileProcessor,
        repository: FileRecordRepository,
        policy: UploadPolicy,
        monitor: Optional[StorageMonitor] = None,
    ) -> None:
        self.storage = storage
        self.processor = processor
        self.repository = repository
        self.policy = policy
        self.monitor = monitor

    async def upload(self, request: UploadRequest, options: Optional[ProcessingOptions] = None) -> UploadOutcome:
        started = time.perf_counter()
        log_ctx = {"teacher_id": request.owner_id, "upload_filename": request.filename, "size": request.size}

        result = validate(request, self.policy)
        if not result.is_valid:
            logger.info("upload_rejected", extra={**log_ctx, "state": UploadState.REJECTED.value, "errors": result.errors})
            raise UploadRejectedError(result.errors, result.size_exceeded, self.policy.max_size_mb)
        await self._check_quota(request, log_ctx)

        stored_keys: List[str] = []
        key = build_storage_key(request.owner_id, request.filename)
        try:
            descriptor = await self._save(request.data, key, request.content_type, stored_keys)
        except StorageError as exc:
            logger.error(
                "upload_store_failed",
                extra={**log_ctx, "state": UploadState.FAILED.value, "error": str(exc), "retryable": exc.retryable},
            )
            self._observe(request, started, error=str(exc))
            raise
        except asyncio.CancelledError:
            logger.warning("upload_cancelled", extra={**log_ctx, "state": UploadState.FAILED.value})
            await self._compensate(stored_keys)
            raise
        logger.info("upload_stored", extra={**log_ctx, "state": UploadState.STORED.value, "key": descriptor.storage_key})

        thumbnail: Optional[StoredFileDescriptor] = None
        try:
            if descriptor.size != request.size:
                raise StorageError(
                    f"stored size {descriptor.size} != received size {request.size}",
                    operation="save",
                    key=descriptor.storage_key,
                    backend=descriptor.backend,
                )

            processing = await self.processor.process(
                request.data,
                request.content_type,
                filename=request.filename,
                options=options,
            )
            if processing.thumbnail_data is not None:
                thumbnail = await self._store_thumbnail(request, processing, stored_keys)

            record = self._build_record(request, descriptor, thumbnail, processing, started)
            record = await asyncio.to_thread(self.repository.create, record)
        except (PersistenceError, StorageError) as exc:
            logger.error("upload_record_failed", extra={**log_ctx, "state": UploadState.FAILED.value, "error": str(exc)})
            self._observe(request, started, error=str(exc))
            await self._compensate(stored_keys)
            raise
        except asyncio.CancelledError:
            logger.warning("upload_cancelled", extra={**log_ctx, "state": UploadState.FAILED.value})
            await self._compensate(stored_keys)
            raise
        except Exception as exc:
            logger.exception("upload_unexpected_error", extra={**log_ctx, "state": UploadState.FAILED.value})
            self._observe(request, started, error=str(exc))
            await self._compensate(stored_keys)
            raise ProcessingError(f"unexpected upload failure: {exc}") from exc

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "upload_recorded",
            extra={
                **log_ctx,
                "state": UploadState.RECORDED.value,
                "file_id": record.id,
                "status": record.status,
                "processing_errors": processing.processing_errors,
                "elapsed_ms": elapsed_ms,
            },
        )
        self._observe(request, started)
        return UploadOutcome(
            record=record,
            descriptor=descriptor,
            processing=processing,
            state=UploadState.RECORDED,
            processing_time_ms=elapsed_ms,
            thumbnail=thumbnail,
        )

    async def _check_quota(self, request: UploadRequest, log_ctx: dict) -> None:
        quota = self.policy.max_storage_bytes
        if not quota:
            return
        _, used = await asyncio.to_thread(self.repository.usage_for_teacher, request.owner_id)
        if used + request.size > quota:
            logger.info(
                "upload_rejected",
                extra={
                    **log_ctx,
                    "state": UploadState.REJECTED.value,
                    "errors": ["storage quota exceeded"],
                    "used_bytes": used,
                    "quota_bytes": quota,
                },
            )
            raise QuotaExceededError(used, request.size, quota)

    async def _save(self, data: bytes, key: str, content_type: str, stored_keys: List[str]) -> StoredFileDescriptor:
        # A cancelled upload still waits for the write so the key it lands on can be deleted.
        task = asyncio.ensure_future(asyncio.to_thread(self.storage.save, data, key, content_type))
        try:
            descriptor = await asyncio.shield(task)
        except asyncio.CancelledError:
            with contextlib.suppress(StorageError):
                stored_keys.append((await task).storage_key)
            raise
        stored_keys.append(descriptor.storage_key)
        return descriptor

    async def _store_thumbnail(
        self, request: UploadRequest, processing: ProcessingResult, stored_keys: List[str]
    ) -> Optional[StoredFileDescriptor]:
        key = build_thumbnail_key(request.owner_id, request.filename)
        try:
            return await self._save(processing.thumbnail_data, key, THUMBNAIL_CONTENT_TYPE, stored_keys)
        except StorageError as exc:
            logger.warning("thumbnail_store_failed", extra={"key": key, "error": str(exc)})
            processing.processing_errors.append("Failed to store generated thumbnail")
            return None

    def _build_record(
        self,
        request: UploadRequest,
        descriptor: StoredFileDescriptor,
        thumbnail: Optional[StoredFileDescriptor],
        processing: ProcessingResult,
        started: float,
    ) -> FileRecord:
        metadata = dict(processing.metadata)
        metadata["processingErrors"] = list(processing.processing_errors)
        metadata["uploadTimeMs"] = int((time.perf_counter() - started) * 1000)

        record = FileRecord(
            teacher_id=request.owner_id,
            session_id=request.session_id,
            message_id=request.message_id,
            filename=request.filename,
            storage_key=descriptor.storage_key,
            backend=descriptor.backend,
            url=descriptor.url,
            content_type=request.content_type,
            size=descriptor.size,
            extracted_text=processing.extracted_text or None,
            thumbnail_key=thumbnail.storage_key if thumbnail else None,
            status=FileStatus.UPLOADED.value,
            file_metadata=metadata,
        )
        advance_status(record, FileStatus.PROCESSING)
        advance_status(record, FileStatus.FAILED if processing.timed_out else FileStatus.PROCESSED)
        record.processed_at = datetime.now(timezone.utc)
        return record

    def _observe(self, request: UploadRequest, started: float, error: Optional[str] = None) -> None:
        if self.monitor is None:
            return
        self.monitor.record(
            "upload",
            success=error is None,
            duration_ms=int((time.perf_counter() - started) * 1000),
            backend=self.storage.backend,
            size=request.size,
            teacher_id=request.owner_id,
            error=error,
        )

    async def _compensate(self, keys: List[str]) -> None:
        for key in keys:
            started = time.perf_counter()
            error: Optional[str] = None
            try:
                await asyncio.to_thread(self.storage.delete, key)
                logger.info("upload_compensated", extra={"key": key, "backend": self.storage.backend})
            except Exception as exc:
                logger.critical(
                    "orphaned_blob",
                    extra={"key": key, "backend": self.storage.backend, "error": str(exc)},
                )
                error = str(exc)
            if self.monitor is not None:
                self.monitor.record(
                    "delete",
                    success=error is None,
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    backend=self.storage.backend,
                    error=error,
                )
