from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class HealthStatus(BaseModel):
    status: str
    storage: Optional[str] = None
