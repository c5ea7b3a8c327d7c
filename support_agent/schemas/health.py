from typing import Literal
from datetime import datetime
from pydantic import BaseModel

ServiceState = Literal["up", "down"]

class ServicesStatus(BaseModel):
    database: ServiceState
    redis: ServiceState
    llm: ServiceState

class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime
    version: str
    services: ServicesStatus
    uptime: int
