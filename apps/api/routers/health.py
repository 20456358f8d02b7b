from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from apps.api.deps.deps import Services, get_services
from apps.api.schemas.health import HealthStatus

router = APIRouter(prefix="/health", tags=["health"]) 


@router.get("/live", response_model=HealthStatus)
def live() -> HealthStatus:
    return HealthStatus(status="ok")


@router.get("/ready", response_model=HealthStatus, responses={503: {"model": HealthStatus}})
async def ready(services: Services = Depends(get_services)):
    backend = services.storage.backend
    if not await asyncio.to_thread(services.repository.ping):
        return JSONResponse(status_code=503, content={"status": "database_unavailable", "storage": backend})
    return HealthStatus(status="ready", storage=backend)
