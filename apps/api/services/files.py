from __future__ import annotations

import asyncio
import logging
import posixpath
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from apps.api.db.models import FileRecord
from apps.api.services.records import FileRecordRepository
from packages.common.errors import (
    FileAccessDeniedError,
    FileNotFoundInStorageError,
    MalformedPathError,
    StorageError,
    StorageObjectNotFoundError,
)
from packages.common.logging import security_event
from packages.common.monitoring import StorageMonitor
from packages.storage.base import FileInfo, StorageAdapter


logger = logging.getLogger(__name__)

CONTENT_TYPES: Dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".md": "text/markdown",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"
IMMUTABLE_CACHE = "private, max-age=31536000, immutable"
DEFAULT_CACHE = "private, max-age=86400"


@dataclass
class ResolvedFile:
    key: str
    content_type: str
    size: int
    backend: str
    headers: Dict[str, str] = field(default_factory=dict)
    data: Optional[bytes] = None


def content_type_for(path: str) -> str:
    return CONTENT_TYPES.get(posixpath.splitext(path)[1].lower(), DEFAULT_CONTENT_TYPE)


def serving_headers(path: str, content_type: str, size: int) -> Dict[str, str]:
    filename = posixpath.basename(path)
    inline = content_type.startswith("image/") or content_type == "application/pdf"
    return {
        "Content-Type": content_type,
        "Content-Length": str(size),
        "Cache-Control": IMMUTABLE_CACHE if content_type.startswith("image/") else DEFAULT_CACHE,
        "Content-Disposition": "inline" if inline else f'attachment; filename="{filename}"',
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
    }


def check_path(path: str) -> str:
    """Reject traversal markers and absolute paths before touching any backend."""
    if not path or ".." in path or "~" in path or "\\" in path or path.startswith("/") or "\x00" in path:
        raise MalformedPathError(f"rejected path {path!r}")
    return path


class FileResolver:
    """Finds a stored file by key, local backend first, and enforces ownership."""

    def __init__(
        self,
        repository: FileRecordRepository,
        local: StorageAdapter,
        cloud: Optional[StorageAdapter] = None,
        monitor: Optional[StorageMonitor] = None,
    ) -> None:
        self.repository = repository
        self.local = local
        self.cloud = cloud
        self.monitor = monitor

    @property
    def _backends(self) -> List[StorageAdapter]:
        return [a for a in (self.local, self.cloud) if a is not None]

    async def resolve(
        self,
        path: str,
        requester_id: Optional[str],
        session_id: Optional[str] = None,
        include_body: bool = True,
    ) -> ResolvedFile:
        try:
            key = check_path(path)
        except MalformedPathError:
            security_event("path_traversal_attempt", path=path, requester_id=requester_id)
            raise

        record = await asyncio.to_thread(self.repository.find_by_key, key)
        if record is not None:
            self._authorize(record, key, requester_id, session_id)

        content_type = content_type_for(key)
        started = time.perf_counter()
        try:
            if include_body:
                data, info, backend = await self._read(key)
            else:
                data = None
                info, backend = await self._stat(key)
        except StorageError as exc:
            self._observe(started, exc.backend or self.local.backend, requester_id, error=str(exc))
            raise

        size = len(data) if data is not None else info.size
        resolved = ResolvedFile(
            key=key,
            content_type=content_type,
            size=size,
            backend=backend,
            headers=serving_headers(key, content_type, size),
            data=data,
        )
        resolved.headers["X-Served-From"] = backend
        logger.info(
            "file_served",
            extra={"key": key, "backend": backend, "size": size, "requester_id": requester_id, "head": not include_body},
        )
        self._observe(started, backend, requester_id, size=size)
        return resolved

    def _authorize(
        self, record: FileRecord, key: str, requester_id: Optional[str], session_id: Optional[str]
    ) -> None:
        if requester_id is None or requester_id != record.teacher_id:
            security_event("file_access_denied", key=key, requester_id=requester_id, reason="owner_mismatch")
            raise FileAccessDeniedError(f"requester {requester_id} does not own {key}")
        if session_id is not None and record.session_id is not None and session_id != record.session_id:
            security_event(
                "file_access_denied", key=key, requester_id=requester_id, session_id=session_id, reason="session_mismatch"
            )
            raise FileAccessDeniedError(f"session {session_id} does not own {key}")

    def _observe(
        self,
        started: float,
        backend: str,
        requester_id: Optional[str],
        size: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.monitor is None:
            return
        self.monitor.record(
            "download",
            success=error is None,
            duration_ms=int((time.perf_counter() - started) * 1000),
            backend=backend,
            size=size,
            teacher_id=requester_id,
            error=error,
        )

    async def _read(self, key: str) -> Tuple[bytes, FileInfo, str]:
        for adapter in self._backends:
            try:
                obj = await asyncio.to_thread(adapter.read, key)
            except StorageObjectNotFoundError:
                continue
            return obj.data, obj.info, adapter.backend
        raise FileNotFoundInStorageError(f"{key} not found in {[a.backend for a in self._backends]}")

    async def _stat(self, key: str) -> Tuple[FileInfo, str]:
        for adapter in self._backends:
            info = await asyncio.to_thread(adapter.info, key)
            if info is not None:
                return info, adapter.backend
        raise FileNotFoundInStorageError(f"{key} not found in {[a.backend for a in self._backends]}")
