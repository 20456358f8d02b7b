from __future__ import annotations

from typing import List, Optional, Union


class FileServiceError(Exception):
    """Base for every error that crosses the HTTP boundary.

    ``code`` is the machine-readable code returned to clients and
    ``public_message`` the only text they ever see.
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)

    def to_response(self) -> dict:
        return {"error": self.public_message, "code": self.code}


# Input errors


class MissingFileError(FileServiceError):
    code = "NO_FILE"
    status_code = 400
    public_message = "No file provided"


class MissingTeacherIdError(FileServiceError):
    code = "NO_TEACHER_ID"
    status_code = 400
    public_message = "Teacher ID required"


class UploadRejectedError(FileServiceError):
    """Validation failed; carries every violation so clients can show them all."""

    def __init__(self, errors: List[str], size_exceeded: bool, max_size_mb: Union[int, float]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)
        self.size_exceeded = size_exceeded
        self.max_size_mb = max_size_mb
        if size_exceeded:
            self.code = "FILE_TOO_LARGE"
            self.status_code = 413
            self.public_message = f"File size exceeds maximum allowed size of {max_size_mb}MB"
        else:
            self.code = "INVALID_FILE_TYPE"
            self.status_code = 400
            self.public_message = "File not allowed"

    def to_response(self) -> dict:
        body = super().to_response()
        body["errors"] = self.errors
        if self.size_exceeded:
            body["maxSize"] = self.max_size_mb
        return body


class QuotaExceededError(FileServiceError):
    """The upload would take the teacher past their storage quota."""

    code = "STORAGE_QUOTA_EXCEEDED"
    status_code = 413

    def __init__(self, used_bytes: int, size: int, quota_bytes: int) -> None:
        super().__init__(f"used={used_bytes} + size={size} > quota={quota_bytes}")
        self.used_bytes = used_bytes
        self.quota_bytes = quota_bytes
        self.public_message = f"Upload would exceed storage limit of {quota_bytes / 1024 ** 3:g}GB"

    def to_response(self) -> dict:
        body = super().to_response()
        body["remainingSpace"] = max(self.quota_bytes - self.used_bytes, 0)
        return body


class InvalidRequestError(FileServiceError):
    code = "INVALID_REQUEST"
    status_code = 400
    public_message = "Invalid request"


class MalformedPathError(FileServiceError):
    code = "INVALID_PATH"
    status_code = 400
    public_message = "Invalid file path"


# Processing errors


class ProcessingError(FileServiceError):
    code = "PROCESSING_ERROR"
    status_code = 500
    public_message = "Upload failed"


# Storage errors


class StorageError(FileServiceError):
    code = "STORAGE_ERROR"
    status_code = 500
    public_message = "Failed to store file"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> None:
        context = ", ".join(
            f"{name}={value}" for name, value in (("operation", operation), ("key", key), ("backend", backend)) if value
        )
        super().__init__(f"{message} ({context})" if context else message)
        self.operation = operation
        self.key = key
        self.backend = backend


class StorageUnavailableError(StorageError):
    retryable = True


class StorageAuthError(StorageError):
    pass


class StorageQuotaError(StorageError):
    pass


class StorageObjectNotFoundError(StorageError):
    pass


class StorageConfigurationError(Exception):
    """Raised at startup when storage settings are missing or only partially present."""


# Persistence errors


class PersistenceError(FileServiceError):
    code = "DATABASE_ERROR"
    status_code = 500
    public_message = "Failed to save file metadata"


class InvalidStatusTransitionError(PersistenceError):
    pass


# Serving / security errors


class FileAccessDeniedError(FileServiceError):
    code = "FORBIDDEN"
    status_code = 403
    public_message = "File access denied"


class FileNotFoundInStorageError(FileServiceError):
    code = "NOT_FOUND"
    status_code = 404
    public_message = "File not found"
