import asyncio
import dataclasses
import logging
import threading
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.api.db.models import FileStatus
from apps.api.services.records import FileRecordRepository
from apps.api.services.uploads import UploadOrchestrator, UploadState
from packages.common.errors import (
    PersistenceError,
    ProcessingError,
    QuotaExceededError,
    StorageError,
    StorageUnavailableError,
    UploadRejectedError,
)
from packages.common.monitoring import StorageMonitor
from packages.processing.processor import FileProcessor, ProcessingResult
from packages.storage.base import StorageAdapter, StoredFileDescriptor
from packages.storage.local import LocalStorageAdapter
from packages.validation.validator import UploadPolicy, UploadRequest


POLICY = UploadPolicy(
    max_size_bytes=1024 * 1024,
    allowed_type_patterns=("text/*", "application/pdf", "image/*"),
    denied_extensions=(".exe",),
)


def _descriptor(key: str = "2025/03/t1/notes.txt", size: int = 11) -> StoredFileDescriptor:
    now = datetime.now(timezone.utc)
    return StoredFileDescriptor(
        storage_key=key,
        url=f"http://testserver/api/files/{key}",
        backend="local",
        size=size,
        content_type="text/plain",
        created_at=now,
        modified_at=now,
    )


def _request(data: bytes = b"hello world", filename: str = "notes.txt", content_type: str = "text/plain"):
    return UploadRequest(data=data, filename=filename, content_type=content_type, owner_id="t1", session_id="s1")


@pytest.fixture
def storage() -> MagicMock:
    mock = MagicMock(spec=StorageAdapter)
    mock.backend = "local"
    mock.save.return_value = _descriptor()
    return mock


@pytest.fixture
def repository() -> MagicMock:
    mock = MagicMock(spec=FileRecordRepository)
    mock.create.side_effect = lambda record: record
    return mock


def _orchestrator(storage, repository, processor=None, policy=POLICY, monitor=None) -> UploadOrchestrator:
    return UploadOrchestrator(
        storage=storage,
        processor=processor or FileProcessor(),
        repository=repository,
        policy=policy,
        monitor=monitor,
    )


class SlowLocalStorage(LocalStorageAdapter):
    """Blocks saves under ``slow_prefix`` long enough to cancel the upload mid-write."""

    def __init__(self, root, slow_prefix: str) -> None:
        super().__init__(root, "http://testserver")
        self.slow_prefix = slow_prefix
        self.slow_save_started = threading.Event()

    def save(self, data, key, content_type):
        if key.startswith(self.slow_prefix):
            self.slow_save_started.set()
            time.sleep(0.2)
        return super().save(data, key, content_type)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_real_components(self, local_storage: LocalStorageAdapter, session_factory, pdf_bytes) -> None:
        repository = FileRecordRepository(session_factory)
        orchestrator = _orchestrator(local_storage, repository)

        outcome = await orchestrator.upload(_request(pdf_bytes, "lesson.pdf", "application/pdf"))

        assert outcome.state is UploadState.RECORDED
        assert outcome.record.status == FileStatus.PROCESSED.value
        assert outcome.record.size == len(pdf_bytes)
        assert outcome.record.session_id == "s1"
        assert "lesson plan" in outcome.record.extracted_text
        assert outcome.record.file_metadata["processingErrors"] == []
        assert local_storage.read(outcome.descriptor.storage_key).data == pdf_bytes
        assert repository.get(outcome.record.id).storage_key == outcome.descriptor.storage_key

    @pytest.mark.asyncio
    async def test_processing_warnings_do_not_fail_upload(self, storage, repository) -> None:
        storage.save.return_value = _descriptor("2025/03/t1/bad.pdf", size=8)
        outcome = await _orchestrator(storage, repository).upload(
            _request(b"%PDF-bad", "bad.pdf", "application/pdf")
        )

        assert outcome.record.status == FileStatus.PROCESSED.value
        assert outcome.record.file_metadata["processingErrors"]
        storage.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_timed_out_processing_marks_failed(self, storage, repository) -> None:
        processor = MagicMock()
        processor.process = AsyncMock(
            return_value=ProcessingResult(processing_errors=["Processing timed out after 30s"], timed_out=True)
        )
        outcome = await _orchestrator(storage, repository, processor).upload(_request())

        assert outcome.record.status == FileStatus.FAILED.value
        repository.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_thumbnail_stored_next_to_image(
        self, local_storage: LocalStorageAdapter, session_factory, png_bytes
    ) -> None:
        repository = FileRecordRepository(session_factory)
        outcome = await _orchestrator(local_storage, repository).upload(_request(png_bytes, "board.png", "image/png"))

        assert outcome.thumbnail is not None
        assert outcome.thumbnail.storage_key.startswith("thumbnails/")
        assert outcome.thumbnail.storage_key.endswith("/t1/board_thumb.jpg")
        assert outcome.record.thumbnail_key == outcome.thumbnail.storage_key
        assert local_storage.read(outcome.thumbnail.storage_key).data[:2] == b"\xff\xd8"

    @pytest.mark.asyncio
    async def test_thumbnail_store_failure_is_warning(self, storage, repository, png_bytes) -> None:
        original = _descriptor("2025/03/t1/board.png", size=len(png_bytes))
        storage.save.side_effect = [original, StorageUnavailableError("down", operation="save")]

        outcome = await _orchestrator(storage, repository).upload(_request(png_bytes, "board.png", "image/png"))

        assert outcome.thumbnail is None
        assert outcome.record.thumbnail_key is None
        assert outcome.record.status == FileStatus.PROCESSED.value
        assert outcome.processing.processing_errors == ["Failed to store generated thumbnail"]
        storage.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_is_recorded_by_monitor(self, storage, repository) -> None:
        monitor = StorageMonitor()

        await _orchestrator(storage, repository, monitor=monitor).upload(_request())

        summary = monitor.summary()
        assert summary["byOperation"] == {"upload": {"count": 1, "errors": 0}}
        assert summary["status"] == "healthy"


class TestRejection:
    @pytest.mark.asyncio
    async def test_rejected_upload_has_no_side_effects(self, storage, repository) -> None:
        with pytest.raises(UploadRejectedError) as exc_info:
            await _orchestrator(storage, repository).upload(_request(filename="setup.exe"))

        assert exc_info.value.code == "INVALID_FILE_TYPE"
        storage.save.assert_not_called()
        repository.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_too_large(self, storage, repository) -> None:
        with pytest.raises(UploadRejectedError) as exc_info:
            await _orchestrator(storage, repository).upload(_request(b"x" * (POLICY.max_size_bytes + 1)))

        assert exc_info.value.code == "FILE_TOO_LARGE"
        assert exc_info.value.status_code == 413
        assert exc_info.value.to_response()["maxSize"] == 1


class TestQuota:
    @pytest.mark.asyncio
    async def test_quota_exceeded_has_no_side_effects(self, storage, repository) -> None:
        repository.usage_for_teacher.return_value = (3, 95)
        policy = dataclasses.replace(POLICY, max_storage_bytes=100)

        with pytest.raises(QuotaExceededError) as exc_info:
            await _orchestrator(storage, repository, policy=policy).upload(_request())

        assert exc_info.value.status_code == 413
        assert exc_info.value.code == "STORAGE_QUOTA_EXCEEDED"
        assert exc_info.value.to_response()["remainingSpace"] == 5
        repository.usage_for_teacher.assert_called_once_with("t1")
        storage.save.assert_not_called()
        repository.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_filling_quota_exactly_is_allowed(self, storage, repository) -> None:
        repository.usage_for_teacher.return_value = (3, 89)
        policy = dataclasses.replace(POLICY, max_storage_bytes=100)

        outcome = await _orchestrator(storage, repository, policy=policy).upload(_request())

        assert outcome.state is UploadState.RECORDED

    @pytest.mark.asyncio
    async def test_zero_quota_skips_usage_lookup(self, storage, repository) -> None:
        await _orchestrator(storage, repository).upload(_request())

        repository.usage_for_teacher.assert_not_called()


class TestFailures:
    @pytest.mark.asyncio
    async def test_storage_failure_records_nothing(self, storage, repository) -> None:
        storage.save.side_effect = StorageUnavailableError("bucket unreachable", operation="save")

        with pytest.raises(StorageError):
            await _orchestrator(storage, repository).upload(_request())

        repository.create.assert_not_called()
        storage.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_persistence_failure_deletes_stored_key(self, storage, repository) -> None:
        storage.save.return_value = _descriptor("2025/03/t1/notes-1a2b3c4d.txt")
        repository.create.side_effect = PersistenceError("db down")

        with pytest.raises(PersistenceError):
            await _orchestrator(storage, repository).upload(_request())

        storage.delete.assert_called_once_with("2025/03/t1/notes-1a2b3c4d.txt")

    @pytest.mark.asyncio
    async def test_persistence_failure_deletes_thumbnail_too(self, storage, repository, png_bytes) -> None:
        original = _descriptor("2025/03/t1/board.png", size=len(png_bytes))
        thumb = _descriptor("thumbnails/2025/03/t1/board_thumb.jpg", size=10)
        storage.save.side_effect = [original, thumb]
        repository.create.side_effect = PersistenceError("db down")

        with pytest.raises(PersistenceError):
            await _orchestrator(storage, repository).upload(_request(png_bytes, "board.png", "image/png"))

        deleted = [c.args[0] for c in storage.delete.call_args_list]
        assert deleted == [original.storage_key, thumb.storage_key]

    @pytest.mark.asyncio
    async def test_failed_compensation_logs_orphan(self, storage, repository, caplog) -> None:
        repository.create.side_effect = PersistenceError("db down")
        storage.delete.side_effect = StorageUnavailableError("still down", operation="delete")

        with caplog.at_level(logging.CRITICAL, logger="apps.api.services.uploads"):
            with pytest.raises(PersistenceError):
                await _orchestrator(storage, repository).upload(_request())

        orphans = [r for r in caplog.records if r.getMessage() == "orphaned_blob"]
        assert len(orphans) == 1
        assert orphans[0].key == "2025/03/t1/notes.txt"

    @pytest.mark.asyncio
    async def test_size_mismatch_is_storage_error(self, storage, repository) -> None:
        storage.save.return_value = _descriptor(size=3)

        with pytest.raises(StorageError):
            await _orchestrator(storage, repository).upload(_request())

        storage.delete.assert_called_once_with("2025/03/t1/notes.txt")
        repository.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancellation_compensates(self, storage, repository) -> None:
        processor = MagicMock()
        processor.process = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await _orchestrator(storage, repository, processor).upload(_request())

        storage.delete.assert_called_once_with("2025/03/t1/notes.txt")
        repository.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_processing_error(self, storage, repository) -> None:
        processor = MagicMock()
        processor.process = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(ProcessingError):
            await _orchestrator(storage, repository, processor).upload(_request())

        storage.delete.assert_called_once_with("2025/03/t1/notes.txt")

    @pytest.mark.asyncio
    async def test_store_failure_is_recorded_by_monitor(self, storage, repository) -> None:
        storage.save.side_effect = StorageUnavailableError("bucket unreachable", operation="save")
        monitor = StorageMonitor()

        with pytest.raises(StorageError):
            await _orchestrator(storage, repository, monitor=monitor).upload(_request())

        assert monitor.summary()["byOperation"] == {"upload": {"count": 1, "errors": 1}}


class TestCancellationDuringWrites:
    @staticmethod
    def _stored_files(storage: LocalStorageAdapter) -> list:
        return [p for p in storage.root.rglob("*") if p.is_file()]

    @pytest.mark.asyncio
    async def test_cancel_during_thumbnail_save_leaves_nothing(self, tmp_path, repository, png_bytes) -> None:
        storage = SlowLocalStorage(tmp_path / "slow", slow_prefix="thumbnails/")
        task = asyncio.create_task(
            _orchestrator(storage, repository).upload(_request(png_bytes, "board.png", "image/png"))
        )

        assert await asyncio.to_thread(storage.slow_save_started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert self._stored_files(storage) == []
        repository.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_during_primary_save_leaves_nothing(self, tmp_path, repository) -> None:
        storage = SlowLocalStorage(tmp_path / "slow", slow_prefix="")
        task = asyncio.create_task(_orchestrator(storage, repository).upload(_request()))

        assert await asyncio.to_thread(storage.slow_save_started.wait, 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert self._stored_files(storage) == []
        repository.create.assert_not_called()
