from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from apps.api.deps.deps import Services, build_services
from apps.api.routers import files, health, storage, uploads
from packages.common.config import AppSettings, get_settings
from packages.common.errors import FileServiceError, InvalidRequestError, MissingFileError
from packages.common.logging import setup_json_logging


logger = logging.getLogger(__name__)


async def _file_service_error_handler(request: Request, exc: FileServiceError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "request_failed",
        extra={"path": request.url.path, "code": exc.code, "status_code": exc.status_code, "detail": str(exc)},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


async def _request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    locs = [list(err.get("loc", ())) for err in exc.errors()]
    # a text field posted as "file" fails UploadFile validation
    error: FileServiceError
    if any(loc and loc[-1] == "file" for loc in locs):
        error = MissingFileError()
    else:
        error = InvalidRequestError()
    logger.info(
        "request_invalid",
        extra={"path": request.url.path, "code": error.code, "status_code": error.status_code, "locs": locs},
    )
    return JSONResponse(status_code=error.status_code, content=error.to_response())


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_crashed", extra={"path": request.url.path})
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "INTERNAL_ERROR"})


def create_app(settings: Optional[AppSettings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_json_logging(settings.log_level, service=settings.app_name)
    app = FastAPI(title=settings.app_name)

    # Fails fast on partial storage configuration
    app.state.services = services or build_services(settings)

    app.add_exception_handler(FileServiceError, _file_service_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _request_validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)

    # Routers
    app.include_router(health.router)
    app.include_router(uploads.router)
    app.include_router(files.router)
    app.include_router(storage.router)

    # Metrics
    if settings.monitoring_enabled:
        Instrumentator().instrument(app).expose(app, include_in_schema=False)

    logger.info(
        "api_started",
        extra={"environment": settings.environment, "storage_backend": app.state.services.storage.backend},
    )
    return app
