from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_TYPES = (
    "image/*,application/pdf,text/*,application/msword,"
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
)
DEFAULT_DENIED_EXTENSIONS = ".exe,.bat,.cmd,.scr,.vbs,.js,.jar,.com,.pif"


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class S3Settings(BaseModel):
    endpoint_url: Optional[str] = Field(default=None, description="S3-compatible endpoint URL; None for AWS")
    access_key: str = Field(..., description="S3 access key")
    secret_key: str = Field(..., description="S3 secret key")
    bucket: str = Field(..., description="Bucket to use for uploads")
    region: str = Field(default="us-east-1", description="Region for S3-compatible services")
    public_read: bool = Field(default=False, description="Return public object URLs instead of presigned ones")
    connect_timeout: float = Field(default=5.0)
    read_timeout: float = Field(default=30.0)
    max_attempts: int = Field(default=3, description="Total attempts including the first, for transient errors")


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="eduhu-files", description="Application name")
    environment: str = Field(default="dev", description="Environment name: dev|staging|prod")
    log_level: str = Field(default="INFO", description="Logging level")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")

    # Database
    database_url: str = Field(default="sqlite:///./var/eduhu.db", alias="DATABASE_URL")
    auto_create_db: bool = Field(default=True, alias="AUTO_CREATE_DB")

    # Storage backend selection: local | s3 | auto
    storage_backend: str = Field(default="auto", alias="STORAGE_BACKEND")
    local_storage_root: str = Field(default="var/uploads", alias="LOCAL_STORAGE_ROOT")

    # S3 / MinIO
    s3_endpoint_url: Optional[str] = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_access_key: Optional[str] = Field(default=None, alias="S3_ACCESS_KEY")
    s3_secret_key: Optional[str] = Field(default=None, alias="S3_SECRET_KEY")
    s3_bucket: Optional[str] = Field(default=None, alias="S3_BUCKET")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_public_read: bool = Field(default=False, alias="S3_PUBLIC_READ")
    s3_connect_timeout_seconds: float = Field(default=5.0, alias="S3_CONNECT_TIMEOUT_SECONDS")
    s3_read_timeout_seconds: float = Field(default=30.0, alias="S3_READ_TIMEOUT_SECONDS")
    s3_max_attempts: int = Field(default=3, alias="S3_MAX_ATTEMPTS")
    signed_url_ttl_seconds: int = Field(default=3600, alias="SIGNED_URL_TTL_SECONDS")

    # Upload policy
    max_file_size_mb: int = Field(default=50, alias="MAX_FILE_SIZE_MB")
    allowed_file_types: str = Field(default=DEFAULT_ALLOWED_TYPES, alias="ALLOWED_FILE_TYPES")
    denied_file_extensions: str = Field(default=DEFAULT_DENIED_EXTENSIONS, alias="DENIED_FILE_EXTENSIONS")
    max_storage_per_teacher_gb: int = Field(default=2, alias="MAX_STORAGE_PER_TEACHER_GB")

    # Processing
    processing_timeout_seconds: float = Field(default=30.0, alias="PROCESSING_TIMEOUT_SECONDS")
    thumbnail_size: int = Field(default=200, alias="THUMBNAIL_SIZE")

    monitoring_enabled: bool = Field(default=False, alias="MONITORING_ENABLED")

    @property
    def s3_fields_present(self) -> dict[str, bool]:
        return {
            "S3_BUCKET": bool(self.s3_bucket),
            "S3_ACCESS_KEY": bool(self.s3_access_key),
            "S3_SECRET_KEY": bool(self.s3_secret_key),
        }

    @property
    def s3(self) -> S3Settings:
        return S3Settings(
            endpoint_url=self.s3_endpoint_url,
            access_key=self.s3_access_key or "",
            secret_key=self.s3_secret_key or "",
            bucket=self.s3_bucket or "",
            region=self.s3_region,
            public_read=self.s3_public_read,
            connect_timeout=self.s3_connect_timeout_seconds,
            read_timeout=self.s3_read_timeout_seconds,
            max_attempts=self.s3_max_attempts,
        )

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def max_storage_per_teacher_bytes(self) -> int:
        return self.max_storage_per_teacher_gb * 1024 ** 3

    @property
    def allowed_type_patterns(self) -> List[str]:
        return _split_csv(self.allowed_file_types)

    @property
    def denied_extensions(self) -> List[str]:
        return [ext if ext.startswith(".") else f".{ext}" for ext in _split_csv(self.denied_file_extensions.lower())]

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        valid = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
        upper = v.upper()
        if upper not in valid:
            return "INFO"
        return upper

    @field_validator("storage_backend")
    @classmethod
    def _validate_storage_backend(cls, v: str) -> str:
        lower = v.strip().lower()
        if lower not in {"local", "s3", "auto"}:
            raise ValueError(f"STORAGE_BACKEND must be one of local|s3|auto, got '{v}'")
        return lower


@lru_cache
def get_settings() -> AppSettings:
    """Return cached application settings loaded from environment/.env.

    Using LRU cache ensures a singleton-style settings object across the app.
    """
    return AppSettings()  # type: ignore[call-arg]
