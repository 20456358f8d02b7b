from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from apps.api.db.models import FileRecord, FileStatus, can_transition
from apps.api.db.session import db_session
from packages.common.errors import InvalidStatusTransitionError, PersistenceError


logger = logging.getLogger(__name__)


class FileRecordRepository:
    """Create/query/update access to persisted FileRecords.

    Every SQLAlchemy failure is re-raised as PersistenceError so callers never
    see driver exceptions.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._factory = session_factory

    def create(self, record: FileRecord) -> FileRecord:
        try:
            with db_session(self._factory) as db:
                db.add(record)
                db.commit()
                db.refresh(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"insert file_records failed for key={record.storage_key}: {exc}") from exc
        logger.info("file_record_created", extra={"file_id": record.id, "key": record.storage_key})
        return record

    def get(self, record_id: str) -> Optional[FileRecord]:
        try:
            with db_session(self._factory) as db:
                return db.get(FileRecord, record_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"select file_records id={record_id} failed: {exc}") from exc

    def find_by_key(self, key: str) -> Optional[FileRecord]:
        """Record owning ``key`` either as its stored object or its thumbnail."""
        stmt = select(FileRecord).where(or_(FileRecord.storage_key == key, FileRecord.thumbnail_key == key)).limit(1)
        try:
            with db_session(self._factory) as db:
                return db.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"select file_records key={key} failed: {exc}") from exc

    def update_status(self, record_id: str, new_status: FileStatus) -> FileRecord:
        try:
            with db_session(self._factory) as db:
                record = db.get(FileRecord, record_id, with_for_update=True)
                if record is None:
                    raise PersistenceError(f"file record {record_id} not found")
                current = FileStatus(record.status)
                if not can_transition(current, new_status):
                    raise InvalidStatusTransitionError(
                        f"file record {record_id}: {current.value} -> {new_status.value} not allowed"
                    )
                record.status = new_status.value
                if new_status in (FileStatus.PROCESSED, FileStatus.FAILED):
                    record.processed_at = datetime.now(timezone.utc)
                db.commit()
                db.refresh(record)
                return record
        except SQLAlchemyError as exc:
            raise PersistenceError(f"update file_records id={record_id} failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            with db_session(self._factory) as db:
                db.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("database_ping_failed", exc_info=True)
            return False
        return True

    def usage_for_teacher(self, teacher_id: str) -> Tuple[int, int]:
        """(file count, total bytes) across a teacher's records."""
        stmt = select(func.count(FileRecord.id), func.coalesce(func.sum(FileRecord.size), 0)).where(
            FileRecord.teacher_id == teacher_id
        )
        try:
            with db_session(self._factory) as db:
                count, total = db.execute(stmt).one()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"usage query for teacher={teacher_id} failed: {exc}") from exc
        return int(count), int(total)
