"""Health check endpoints."""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Request, Response
from pydantic import BaseModel


router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Health check endpoint."""
    services = request.app.state.services
    health = await services.token_service.connection_health(services.settings.integration_id)
    if health.needs_reconnect:
        ledger = "reconnect_required"
    elif health.needs_refresh:
        ledger = "refresh_due"
    else:
        ledger = "connected"

    return HealthResponse(
        status="healthy" if health.connected else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        version="1.0.0",
        services={
            "api": "up",
            "ledger": ledger,
            "storage": "up",
            "sync": "running" if services.orchestrator.is_running() else "idle",
        }
    )


@router.get("/ready")
async def readiness_check() -> Dict[str, str]:
    """Readiness probe for Kubernetes."""
    return {"status": "ready"}


@router.get("/live")
async def liveness_check(response: Response) -> Dict[str, str]:
    """Liveness probe for Kubernetes."""
    return {"status": "alive"}
