from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from packages.common.config import AppSettings
from packages.storage.base import sanitize_filename


MAX_FILENAME_LENGTH = 255
_MB = 1024 * 1024
_INVALID_FILENAME_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_RESERVED_FILENAME = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE)


@dataclass(frozen=True)
class UploadRequest:
    data: bytes
    filename: str
    content_type: str
    owner_id: str
    session_id: Optional[str] = None
    message_id: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        """Extension of the name the file will be stored under, not the raw client name."""
        return os.path.splitext(sanitize_filename(self.filename))[1].lower()


@dataclass(frozen=True)
class UploadPolicy:
    max_size_bytes: int
    allowed_type_patterns: Sequence[str]
    denied_extensions: Sequence[str]
    # 0 disables the per-teacher quota
    max_storage_bytes: int = 0

    @property
    def max_size_mb(self) -> Union[int, float]:
        mb = self.max_size_bytes / _MB
        return int(mb) if mb.is_integer() else round(mb, 2)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "UploadPolicy":
        return cls(
            max_size_bytes=settings.max_file_size_bytes,
            allowed_type_patterns=tuple(settings.allowed_type_patterns),
            denied_extensions=tuple(settings.denied_extensions),
            max_storage_bytes=settings.max_storage_per_teacher_bytes,
        )


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    size_exceeded: bool = False


def mime_matches(content_type: str, pattern: str) -> bool:
    """Exact match, or ``type/*`` wildcard match on the major type."""
    content_type = content_type.split(";", 1)[0].strip().lower()
    pattern = pattern.strip().lower()
    if pattern.endswith("/*"):
        return content_type.startswith(pattern[:-1])
    return content_type == pattern


def filename_violations(filename: str) -> List[str]:
    errors: List[str] = []
    if len(filename) > MAX_FILENAME_LENGTH:
        errors.append(f"Filename is too long (maximum {MAX_FILENAME_LENGTH} characters)")
    if _INVALID_FILENAME_CHARS.search(filename):
        errors.append("Filename contains invalid characters")
    if _RESERVED_FILENAME.match(os.path.basename(filename.replace("\\", "/")).strip()):
        errors.append("Filename uses a reserved system name")
    return errors


def validate(candidate: UploadRequest, policy: UploadPolicy) -> ValidationResult:
    """Check a candidate upload against the policy, collecting every violation."""
    errors: List[str] = []

    size_exceeded = candidate.size > policy.max_size_bytes
    if size_exceeded:
        errors.append(f"File size exceeds maximum allowed size of {policy.max_size_mb}MB")

    if not any(mime_matches(candidate.content_type, p) for p in policy.allowed_type_patterns):
        errors.append(f"File type {candidate.content_type or 'unknown'} is not allowed")

    denied = {ext.lower() for ext in policy.denied_extensions}
    if candidate.extension and candidate.extension in denied:
        errors.append(f"File extension {candidate.extension} is not allowed for security reasons")

    errors.extend(filename_violations(candidate.filename))

    return ValidationResult(is_valid=not errors, errors=errors, size_exceeded=size_exceeded)
