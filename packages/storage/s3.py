from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import boto3
from botocore.client import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from packages.common.config import S3Settings
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
CACHE_CONTROL = "private, max-age=31536000, immutable"

_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404", "NoSuchBucket"}
_AUTH_CODES = {
    "AccessDenied",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
    "InvalidToken",
    "AllAccessDisabled",
    "403",
}
_QUOTA_CODES = {"QuotaExceeded", "ServiceQuotaExceeded", "EntityTooLarge", "TooManyBuckets"}
_COLLISION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict"}


def build_s3_client(settings: S3Settings) -> Any:
    """boto3 client with bounded timeouts and exponential-backoff retries.

    ``standard`` retry mode only retries throttling and transient network or
    5xx errors, so auth and quota failures surface on the first attempt.
    """
    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=settings.endpoint_url,
        aws_access_key_id=settings.access_key,
        aws_secret_access_key=settings.secret_key,
        region_name=settings.region,
        config=Config(
            signature_version="s3v4",
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
            retries={"max_attempts": settings.max_attempts, "mode": "standard"},
        ),
    )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _wrap_client_error(exc: Exception, operation: str, key: str) -> StorageError:
    ctx = {"operation": operation, "key": key, "backend": "s3"}
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _NOT_FOUND_CODES or status == 404:
            return StorageObjectNotFoundError(f"object not found ({code})", **ctx)
        if code in _AUTH_CODES or status == 403:
            return StorageAuthError(f"access denied ({code})", **ctx)
        if code in _QUOTA_CODES:
            return StorageQuotaError(f"quota exceeded ({code})", **ctx)
        return StorageUnavailableError(f"object store error ({code or status})", **ctx)
    if isinstance(exc, NoCredentialsError):
        return StorageAuthError("no credentials available", **ctx)
    if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return StorageUnavailableError(f"object store unreachable: {type(exc).__name__}", **ctx)
    return StorageUnavailableError(f"object store failure: {type(exc).__name__}", **ctx)


class S3StorageAdapter(StorageAdapter):
    """S3-compatible backend; keys are object keys in a single bucket."""

    backend = "s3"

    def __init__(self, settings: S3Settings, client: Any = None, signed_url_ttl: int = 3600) -> None:
        self.settings = settings
        self.bucket = settings.bucket
        self.signed_url_ttl = signed_url_ttl
        self._client = client if client is not None else build_s3_client(settings)

    def _object_url(self, key: str) -> str:
        if self.settings.public_read:
            if self.settings.endpoint_url:
                return f"{self.settings.endpoint_url.rstrip('/')}/{self.bucket}/{quote(key)}"
            return f"https://{self.bucket}.s3.{self.settings.region}.amazonaws.com/{quote(key)}"
        return self.signed_url(key, self.signed_url_ttl)

    def save(self, data: bytes, key: str, content_type: str) -> StoredFileDescriptor:
        candidate = key
        for _ in range(MAX_COLLISION_ATTEMPTS):
            try:
                self._client.put_object(
                    Bucket=self.bucket,
                    Key=candidate,
                    Body=data,
                    ContentType=content_type,
                    ContentLength=len(data),
                    CacheControl=CACHE_CONTROL,
                    IfNoneMatch="*",
                )
            except ClientError as exc:
                if _error_code(exc) in _COLLISION_CODES:
                    logger.info("storage_key_collision", extra={"key": candidate, "backend": self.backend})
                    candidate = with_collision_suffix(key)
                    continue
                raise _wrap_client_error(exc, "save", candidate) from exc
            except BotoCoreError as exc:
                raise _wrap_client_error(exc, "save", candidate) from exc

            now = datetime.now(timezone.utc)
            logger.info("storage_saved", extra={"key": candidate, "backend": self.backend, "size": len(data)})
            return StoredFileDescriptor(
                storage_key=candidate,
                url=self._object_url(candidate),
                backend=self.backend,
                size=len(data),
                content_type=content_type,
                created_at=now,
                modified_at=now,
            )
        raise StorageError("could not find a free key", operation="save", key=key, backend=self.backend)

    def read(self, key: str) -> StoredObject:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=key)
            data = obj["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise _wrap_client_error(exc, "read", key) from exc
        modified = obj.get("LastModified") or datetime.now(timezone.utc)
        info = FileInfo(
            key=key,
            size=int(obj.get("ContentLength", len(data))),
            content_type=obj.get("ContentType"),
            created_at=modified,
            modified_at=modified,
        )
        return StoredObject(data=data, info=info)

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            wrapped = _wrap_client_error(exc, "delete", key)
            if isinstance(wrapped, StorageObjectNotFoundError):
                return
            raise wrapped from exc
        logger.info("storage_deleted", extra={"key": key, "backend": self.backend})

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise _wrap_client_error(exc, "signed_url", key) from exc

    def info(self, key: str) -> Optional[FileInfo]:
        try:
            head = self._client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            wrapped = _wrap_client_error(exc, "info", key)
            if isinstance(wrapped, StorageObjectNotFoundError):
                return None
            raise wrapped from exc
        modified = head.get("LastModified") or datetime.now(timezone.utc)
        return FileInfo(
            key=key,
            size=int(head.get("ContentLength", 0)),
            content_type=head.get("ContentType"),
            created_at=modified,
            modified_at=modified,
        )

    def describe(self) -> dict:
        return {
            "bucket": self.bucket,
            "region": self.settings.region,
            "endpoint": self.settings.endpoint_url,
            "publicRead": self.settings.public_read,
        }
