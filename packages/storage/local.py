from __future__ import annotations

import errno
import logging
import mimetypes
import os
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from packages.common.errors import (
    StorageAuthError,
    StorageError,
    StorageObjectNotFoundError,
    StorageQuotaError,
    StorageUnavailableError,
)
from packages.storage.base import (
    FileInfo,
    StorageAdapter,
    StoredFileDescriptor,
    StoredObject,
    with_collision_suffix,
)


logger = logging.getLogger(__name__)

MAX_COLLISION_ATTEMPTS = 5


def _wrap_os_error(exc: OSError, operation: str, key: str) -> StorageError:
    if isinstance(exc, PermissionError):
        return StorageAuthError("permission denied", operation=operation, key=key, backend="local")
    if exc.errno in (errno.ENOSPC, errno.EDQUOT):
        return StorageQuotaError("disk full or quota exceeded", operation=operation, key=key, backend="local")
    return StorageUnavailableError(f"filesystem error: {exc.strerror or exc}", operation=operation, key=key, backend="local")


def _as_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class LocalStorageAdapter(StorageAdapter):
    """Stores objects as files below a root directory; the key is the relative path."""

    backend = "local"

    def __init__(self, root: str | Path, public_base_url: str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _path_for(self, key: str) -> Path:
        path = (self.root / key.lstrip("/")).resolve()
        if self.root != path and self.root not in path.parents:
            raise StorageError("key escapes storage root", operation="resolve", key=key, backend=self.backend)
        return path

    def _url_for(self, key: str) -> str:
        return f"{self.public_base_url}/api/files/{quote(key)}"

    def save(self, data: bytes, key: str, content_type: str) -> StoredFileDescriptor:
        candidate = key
        for _ in range(MAX_COLLISION_ATTEMPTS):
            final = self._path_for(candidate)
            tmp = final.parent / f".{final.name}.{secrets.token_hex(4)}.tmp"
            try:
                final.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                # link() refuses to replace an existing file, which makes the
                # collision check and the publish a single step
                os.link(tmp, final)
            except FileExistsError:
                logger.info("storage_key_collision", extra={"key": candidate, "backend": self.backend})
                candidate = with_collision_suffix(key)
                continue
            except OSError as exc:
                raise _wrap_os_error(exc, "save", candidate) from exc
            finally:
                tmp.unlink(missing_ok=True)

            stat = final.stat()
            return StoredFileDescriptor(
                storage_key=candidate,
                url=self._url_for(candidate),
                backend=self.backend,
                size=stat.st_size,
                content_type=content_type,
                created_at=_as_datetime(stat.st_ctime),
                modified_at=_as_datetime(stat.st_mtime),
            )
        raise StorageError("could not find a free key", operation="save", key=key, backend=self.backend)

    def read(self, key: str) -> StoredObject:
        path = self._path_for(key)
        try:
            data = path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise StorageObjectNotFoundError("object not found", operation="read", key=key, backend=self.backend) from exc
        except OSError as exc:
            raise _wrap_os_error(exc, "read", key) from exc
        info = self.info(key)
        if info is None:
            raise StorageObjectNotFoundError("object vanished during read", operation="read", key=key, backend=self.backend)
        return StoredObject(data=data, info=info)

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise _wrap_os_error(exc, "delete", key) from exc
        logger.info("storage_deleted", extra={"key": key, "backend": self.backend})

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        # Local files are only reachable through the file-serving endpoint,
        # which applies its own ownership checks.
        return self._url_for(key)

    def info(self, key: str) -> Optional[FileInfo]:
        path = self._path_for(key)
        try:
            stat = path.stat()
        except (FileNotFoundError, NotADirectoryError):
            return None
        except OSError as exc:
            raise _wrap_os_error(exc, "info", key) from exc
        if not path.is_file():
            return None
        return FileInfo(
            key=key,
            size=stat.st_size,
            content_type=mimetypes.guess_type(path.name)[0],
            created_at=_as_datetime(stat.st_ctime),
            modified_at=_as_datetime(stat.st_mtime),
        )

    def describe(self) -> dict:
        return {"storageDir": str(self.root), "baseUrl": self.public_base_url}
