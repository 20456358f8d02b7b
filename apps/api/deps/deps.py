from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from apps.api.db.session import create_db_engine, create_session_factory
from apps.api.services.files import FileResolver
from apps.api.services.records import FileRecordRepository
from apps.api.services.uploads import UploadOrchestrator
from packages.common.config import AppSettings
from packages.common.monitoring import StorageMonitor
from packages.processing.processor import FileProcessor
from packages.storage.factory import StorageAdapterFactory, StorageBackends
from packages.validation.validator import UploadPolicy


@dataclass
class Services:
    """Everything built once at startup and shared by request handlers."""

    settings: AppSettings
    storage: StorageBackends
    repository: FileRecordRepository
    orchestrator: UploadOrchestrator
    resolver: FileResolver
    monitor: StorageMonitor


def build_services(
    settings: AppSettings,
    s3_client: Any = None,
    session_factory: Optional[sessionmaker[Session]] = None,
) -> Services:
    """Wire adapters and services from settings; raises on invalid storage configuration."""
    storage = StorageAdapterFactory.create(settings, s3_client=s3_client)
    if session_factory is None:
        engine = create_db_engine(settings.database_url)
        session_factory = create_session_factory(engine, create_schema=settings.auto_create_db)
    repository = FileRecordRepository(session_factory)
    monitor = StorageMonitor(enabled=settings.monitoring_enabled)
    processor = FileProcessor(
        timeout_seconds=settings.processing_timeout_seconds,
        thumbnail_size=settings.thumbnail_size,
    )
    orchestrator = UploadOrchestrator(
        storage=storage.primary,
        processor=processor,
        repository=repository,
        policy=UploadPolicy.from_settings(settings),
        monitor=monitor,
    )
    resolver = FileResolver(repository=repository, local=storage.local, cloud=storage.cloud, monitor=monitor)
    return Services(
        settings=settings,
        storage=storage,
        repository=repository,
        orchestrator=orchestrator,
        resolver=resolver,
        monitor=monitor,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_orchestrator(services: Services = Depends(get_services)) -> UploadOrchestrator:
    return services.orchestrator


def get_resolver(services: Services = Depends(get_services)) -> FileResolver:
    return services.resolver
