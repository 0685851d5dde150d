"""Sync endpoints.

Implements:
- POST /sync - Run a sync (pull, push or both)
- GET /sync/progress - Server-sent stream of per-entity-type progress
- GET /sync/status - Progress snapshot and last run result
- POST /sync/abort - Stop running syncs after the current record
- GET /sync/conflicts - Open conflicts
- POST /sync/conflicts/{id}/resolve - Resolve one conflict
- GET /sync/logs - Audit trail
- GET /sync/connection - Ledger credential health
- POST /sync/connection/refresh - Force a token refresh
"""

import asyncio
import json
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from api.dependencies import SyncServices, get_services
from connectors.ledger_base import AuthError
from core.models.sync import (
    ConflictDetail,
    EntityType,
    ProgressState,
    ProgressStatus,
    ResolutionChoice,
    RunState,
    SyncLogEntry,
    SyncRequest,
    SyncResult,
    utcnow,
)
from core.observability.logging import get_logger
from sync_engine.conflicts import ConflictResolution
from sync_engine.errors import (
    ConflictNotFoundError,
    ConflictResolutionError,
    SyncAlreadyRunningError,
    SyncConnectionError,
)
from sync_engine.token_refresh import ConnectionHealth

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class ResolveRequest(BaseModel):
    """Operator decision on a conflict."""
    resolution: ResolutionChoice
    notes: Optional[str] = Field(None, max_length=2000)


class AbortRequest(BaseModel):
    correlation_id: Optional[str] = Field(None, alias="correlationId")


class AbortResponse(BaseModel):
    aborted: bool


class SyncStatusResponse(BaseModel):
    """Current progress and the last finished run."""
    status: ProgressStatus
    running: bool
    progress: List[ProgressState]
    last_result: Optional[SyncResult] = None


def _status_code(result: SyncResult) -> int:
    if result.state == RunState.ABORTED:
        return 500
    if result.conflicts:
        return 409
    return 200


# =============================================================================
# Runs
# =============================================================================

@router.post("", response_model=SyncResult)
async def run_sync(
    request: SyncRequest,
    x_user_id: Optional[str] = Header(None),
    services: SyncServices = Depends(get_services),
):
    """Run one sync.

    Status 200 on success (including runs with per-record errors), 409 when
    conflicts were produced, 423 when an overlapping run is active and 500
    when the run was aborted.
    """
    if x_user_id and not request.user_id:
        request = request.model_copy(update={"user_id": x_user_id})

    try:
        result = await services.orchestrator.run(request)
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=423, detail=str(e))

    return JSONResponse(status_code=_status_code(result), content=result.model_dump(mode="json"))


@router.post("/abort", response_model=AbortResponse)
async def abort_sync(
    request: Optional[AbortRequest] = None,
    services: SyncServices = Depends(get_services),
) -> AbortResponse:
    correlation_id = request.correlation_id if request else None
    return AbortResponse(aborted=services.orchestrator.abort(correlation_id))


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(services: SyncServices = Depends(get_services)) -> SyncStatusResponse:
    progress = services.progress
    return SyncStatusResponse(
        status=progress.overall_status(),
        running=services.orchestrator.is_running(),
        progress=progress.snapshot(),
        last_result=services.orchestrator.last_result,
    )


# =============================================================================
# Progress stream
# =============================================================================

def _sse(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


async def _progress_events(
    request: Request,
    services: SyncServices,
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    queue = services.progress.subscribe()
    try:
        while True:
            try:
                state = await asyncio.wait_for(queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    return
                yield _sse("heartbeat", json.dumps({"timestamp": utcnow().isoformat()}))
                continue
            if state is None:
                yield _sse("close", "{}")
                return
            yield _sse("progress", state.model_dump_json())
    finally:
        services.progress.unsubscribe(queue)


@router.get("/progress")
async def stream_progress(request: Request, services: SyncServices = Depends(get_services)):
    """Server-sent events: one ``progress`` event per entity-type update.

    The stream opens with the current state of every entity type and sends
    a ``heartbeat`` event whenever nothing happened for the heartbeat
    interval.
    """
    return StreamingResponse(
        _progress_events(request, services, services.settings.heartbeat_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Conflicts
# =============================================================================

@router.get("/conflicts", response_model=List[ConflictDetail])
async def list_conflicts(
    entity_type: Optional[EntityType] = Query(None, alias="entityType"),
    limit: int = Query(100, ge=1, le=1000),
    services: SyncServices = Depends(get_services),
) -> List[ConflictDetail]:
    return services.resolver.list_open(entity_type.value if entity_type else None, limit=limit)


@router.post("/conflicts/{state_id}/resolve", response_model=ConflictResolution)
async def resolve_conflict(
    state_id: str,
    request: ResolveRequest,
    x_user_id: Optional[str] = Header(None),
    services: SyncServices = Depends(get_services),
) -> ConflictResolution:
    """Resolve a conflict with use_local, use_remote or manual."""
    try:
        return await services.resolver.resolve(
            state_id, request.resolution, notes=request.notes, user_id=x_user_id,
        )
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=423, detail=str(e))
    except SyncConnectionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ConflictResolutionError as e:
        raise HTTPException(status_code=409, detail=str(e))


# =============================================================================
# Audit trail
# =============================================================================

@router.get("/logs", response_model=List[SyncLogEntry])
async def list_logs(
    correlation_id: Optional[str] = Query(None, alias="correlationId"),
    entity_type: Optional[EntityType] = Query(None, alias="entityType"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    limit: int = Query(100, ge=1, le=1000),
    services: SyncServices = Depends(get_services),
) -> List[SyncLogEntry]:
    return services.audit.query(
        correlation_id=correlation_id,
        entity_type=entity_type.value if entity_type else None,
        entity_id=entity_id,
        limit=limit,
    )


# =============================================================================
# Connection
# =============================================================================

@router.get("/connection", response_model=ConnectionHealth)
async def connection_status(services: SyncServices = Depends(get_services)) -> ConnectionHealth:
    return await services.token_service.connection_health(services.settings.integration_id)


@router.post("/connection/refresh", response_model=ConnectionHealth)
async def refresh_connection(services: SyncServices = Depends(get_services)) -> ConnectionHealth:
    """Refresh the ledger access token now."""
    integration_id = services.settings.integration_id
    try:
        await services.token_service.ensure_valid(integration_id, force=True)
    except AuthError as e:
        logger.warning(f"Manual token refresh failed: {e}")
        raise HTTPException(status_code=502, detail=f"Token refresh failed: {e}")
    return await services.token_service.connection_health(integration_id)
