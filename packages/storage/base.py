from __future__ import annotations

import os
import re
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


THUMBNAIL_PREFIX = "thumbnails"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class FileInfo:
    key: str
    size: int
    content_type: Optional[str]
    created_at: datetime
    modified_at: datetime


@dataclass(frozen=True)
class StoredFileDescriptor:
    storage_key: str
    url: str
    backend: str
    size: int
    content_type: str
    created_at: datetime
    modified_at: datetime


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    info: FileInfo


def sanitize_filename(filename: str) -> str:
    """Make a client filename safe for use as the last segment of a key."""
    # trailing dots and spaces are dropped by Windows, so "a.exe. " is "a.exe"
    name = os.path.basename(filename.replace("\\", "/")).rstrip(". \t\r\n")
    stem, ext = os.path.splitext(name)
    stem = _UNSAFE_CHARS.sub("-", stem).strip("-.") or "file"
    ext = _UNSAFE_CHARS.sub("", ext.lower())
    return f"{stem[:120]}{ext}"


def build_storage_key(owner_id: str, filename: str, now: Optional[datetime] = None) -> str:
    """``YYYY/MM/<owner>/<safe filename>``."""
    now = now or datetime.now(timezone.utc)
    owner = sanitize_filename(owner_id) if owner_id else "anonymous"
    return f"{now:%Y}/{now:%m}/{owner}/{sanitize_filename(filename)}"


def build_thumbnail_key(owner_id: str, filename: str, now: Optional[datetime] = None) -> str:
    stem = os.path.splitext(sanitize_filename(filename))[0]
    return f"{THUMBNAIL_PREFIX}/{build_storage_key(owner_id, f'{stem}_thumb.jpg', now)}"


def with_collision_suffix(key: str) -> str:
    """Append a short opaque suffix before the extension."""
    root, ext = os.path.splitext(key)
    return f"{root}-{secrets.token_hex(4)}{ext}"


class StorageAdapter(ABC):
    """Contract shared by the local filesystem and S3 backends."""

    backend: str = ""

    @abstractmethod
    def save(self, data: bytes, key: str, content_type: str) -> StoredFileDescriptor:
        """Persist bytes under ``key`` or, if taken, under a suffixed variant.

        Never overwrites an existing object; the returned descriptor carries
        the key actually written.

        Raises:
            StorageError: on any backend failure.
        """

    @abstractmethod
    def read(self, key: str) -> StoredObject:
        """Raises StorageObjectNotFoundError when the key is absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the object; deleting a missing key is not an error."""

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int) -> str:
        """URL granting time-limited read access to ``key``."""

    @abstractmethod
    def info(self, key: str) -> Optional[FileInfo]:
        """Metadata for ``key`` or None when it does not exist."""

    @abstractmethod
    def describe(self) -> dict:
        """Non-secret configuration details for diagnostics."""
