import pytest

from apps.api.db.models import FileRecord, FileStatus, can_transition
from apps.api.services.records import FileRecordRepository
from packages.common.errors import InvalidStatusTransitionError, PersistenceError


def _record(key: str, teacher_id: str = "t1", size: int = 100, **kwargs) -> FileRecord:
    return FileRecord(
        teacher_id=teacher_id,
        filename=key.rsplit("/", 1)[-1],
        storage_key=key,
        backend="local",
        url=f"http://testserver/api/files/{key}",
        content_type="application/pdf",
        size=size,
        **kwargs,
    )


def test_transitions_only_move_forward() -> None:
    assert can_transition(FileStatus.UPLOADED, FileStatus.PROCESSING)
    assert can_transition(FileStatus.PROCESSING, FileStatus.FAILED)
    assert not can_transition(FileStatus.PROCESSED, FileStatus.PROCESSING)
    assert not can_transition(FileStatus.UPLOADED, FileStatus.PROCESSED)
    assert not can_transition(FileStatus.FAILED, FileStatus.UPLOADED)


def test_create_and_get(repository: FileRecordRepository) -> None:
    created = repository.create(_record("2025/03/t1/a.pdf", file_metadata={"pageCount": 2}))

    fetched = repository.get(created.id)
    assert fetched is not None
    assert fetched.status == FileStatus.UPLOADED.value
    assert fetched.file_metadata == {"pageCount": 2}
    assert fetched.created_at is not None


def test_duplicate_key_is_persistence_error(repository: FileRecordRepository) -> None:
    repository.create(_record("2025/03/t1/a.pdf"))
    with pytest.raises(PersistenceError):
        repository.create(_record("2025/03/t1/a.pdf"))


def test_update_status_is_monotonic(repository: FileRecordRepository) -> None:
    record = repository.create(_record("2025/03/t1/a.pdf"))

    repository.update_status(record.id, FileStatus.PROCESSING)
    done = repository.update_status(record.id, FileStatus.PROCESSED)
    assert done.status == "processed"
    assert done.processed_at is not None

    with pytest.raises(InvalidStatusTransitionError):
        repository.update_status(record.id, FileStatus.PROCESSING)
    assert repository.get(record.id).status == "processed"


def test_update_status_unknown_record(repository: FileRecordRepository) -> None:
    with pytest.raises(PersistenceError):
        repository.update_status("missing", FileStatus.PROCESSING)


def test_find_by_key_matches_thumbnail(repository: FileRecordRepository) -> None:
    record = repository.create(
        _record("2025/03/t1/photo.png", thumbnail_key="thumbnails/2025/03/t1/photo_thumb.jpg")
    )

    assert repository.find_by_key("2025/03/t1/photo.png").id == record.id
    assert repository.find_by_key("thumbnails/2025/03/t1/photo_thumb.jpg").id == record.id
    assert repository.find_by_key("2025/03/t1/other.png") is None


def test_usage_for_teacher(repository: FileRecordRepository) -> None:
    repository.create(_record("2025/03/t1/a.pdf", size=100))
    repository.create(_record("2025/03/t1/b.pdf", size=250))
    repository.create(_record("2025/03/t2/c.pdf", teacher_id="t2", size=999))

    assert repository.usage_for_teacher("t1") == (2, 350)
    assert repository.usage_for_teacher("nobody") == (0, 0)


def test_ping(repository: FileRecordRepository) -> None:
    assert repository.ping() is True
