from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from packages.common.config import AppSettings
from packages.common.errors import StorageConfigurationError
from packages.storage.base import StorageAdapter
from packages.storage.local import LocalStorageAdapter
from packages.storage.s3 import S3StorageAdapter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageBackends:
    """The adapter uploads are written to, plus the adapters files are served from.

    ``local`` is always present so files written during development remain
    servable after switching to S3; ``cloud`` is set only when S3 is selected.
    """

    primary: StorageAdapter
    local: LocalStorageAdapter
    cloud: Optional[S3StorageAdapter] = None

    @property
    def backend(self) -> str:
        return self.primary.backend


def select_backend(settings: AppSettings) -> str:
    """Decide between ``local`` and ``s3``; partial S3 configuration is an error."""
    present = settings.s3_fields_present
    missing = sorted(name for name, ok in present.items() if not ok)

    if settings.storage_backend == "local":
        return "local"
    if settings.storage_backend == "s3":
        if missing:
            raise StorageConfigurationError(f"STORAGE_BACKEND=s3 but {', '.join(missing)} not set")
        return "s3"
    # auto
    if not missing:
        return "s3"
    if len(missing) == len(present):
        return "local"
    raise StorageConfigurationError(
        f"S3 storage is partially configured; missing {', '.join(missing)}. "
        "Set all S3 settings or none, or choose STORAGE_BACKEND explicitly."
    )


class StorageAdapterFactory:
    """Builds the storage backends once at startup from settings."""

    @classmethod
    def create(cls, settings: AppSettings, s3_client: Any = None) -> StorageBackends:
        backend = select_backend(settings)
        local = LocalStorageAdapter(settings.local_storage_root, settings.public_base_url)
        if backend == "local":
            logger.info("storage_selected", extra={"backend": "local", **local.describe()})
            return StorageBackends(primary=local, local=local)

        cloud = S3StorageAdapter(settings.s3, client=s3_client, signed_url_ttl=settings.signed_url_ttl_seconds)
        logger.info("storage_selected", extra={"backend": "s3", "bucket": cloud.bucket})
        return StorageBackends(primary=cloud, local=local, cloud=cloud)
