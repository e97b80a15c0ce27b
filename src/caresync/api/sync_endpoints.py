"""Sync API endpoints.

Operator-facing view of the device's sync state: aggregate status, jobs that
need attention, superseded versions awaiting review, and manual controls.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from caresync.core.exceptions import CareSyncError, RecordNotFoundError
from caresync.sync.sync_service import SyncService
from caresync.utils.logging import get_logger

router = APIRouter(prefix="/sync", tags=["sync"])
logger = get_logger(__name__)


def get_sync_service(request: Request) -> SyncService:
    """Sync service attached to the application."""
    service: Optional[SyncService] = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync service is not running",
        )
    return service


service_dependency = Depends(get_sync_service)


# Request/Response Models
class SyncStatusResponse(BaseModel):
    """Aggregate sync status."""

    state: str = Field(..., description="idle, syncing, offline, error, success or unauthorized")
    is_online: bool
    paused: bool
    pending: int = Field(..., description="Records with unpushed local changes")
    needs_attention: int = Field(..., description="Records in conflict or failed")
    dead_lettered: int
    in_flight: int
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    device_id: str


class SyncJobResponse(BaseModel):
    """A sync queue entry."""

    sequence: int
    entity_type: str
    record_id: str
    state: str
    attempt_count: int
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SupersededResponse(BaseModel):
    """A version that lost reconciliation."""

    id: int
    entity_type: str
    record_id: str
    payload: Optional[Dict[str, Any]] = None
    updated_at: Optional[datetime] = None
    local_revision: Optional[int] = None
    deleted: bool
    source: str
    winner: str
    reason: str
    acknowledged: bool
    created_at: Optional[datetime] = None


class ResumeRequest(BaseModel):
    """Resume after re-authentication."""

    access_token: Optional[str] = Field(None, description="New bearer token for the remote")


def _error(e: CareSyncError) -> HTTPException:
    if isinstance(e, RecordNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)


@router.get("/status", response_model=SyncStatusResponse, summary="Get sync status")
async def get_status(service: SyncService = service_dependency) -> Dict[str, Any]:
    """Aggregate sync status of this device."""
    return service.status().to_dict()


@router.get("/dead-letters", response_model=List[SyncJobResponse])
async def list_dead_letters(service: SyncService = service_dependency) -> List[Dict[str, Any]]:
    """Jobs that exhausted their retries."""
    return [job.to_dict() for job in service.dead_letters()]


@router.get("/conflicts", response_model=List[SyncJobResponse])
async def list_conflicts(service: SyncService = service_dependency) -> List[Dict[str, Any]]:
    """Jobs the remote rejected or that wait for manual reconciliation."""
    return [job.to_dict() for job in service.conflicts()]


@router.get("/superseded", response_model=List[SupersededResponse])
async def list_superseded(
    entity_type: Optional[str] = None,
    include_acknowledged: bool = False,
    service: SyncService = service_dependency,
) -> List[Dict[str, Any]]:
    """Versions discarded by reconciliation."""
    return [
        version.to_dict()
        for version in service.superseded(entity_type, include_acknowledged=include_acknowledged)
    ]


@router.post("/superseded/{superseded_id}/acknowledge", response_model=SupersededResponse)
async def acknowledge_superseded(
    superseded_id: int, service: SyncService = service_dependency
) -> Dict[str, Any]:
    """Mark a superseded version as reviewed."""
    try:
        version = service.acknowledge_superseded(superseded_id)
    except CareSyncError as e:
        raise _error(e) from e
    logger.info("sync_superseded_acknowledged", superseded_id=superseded_id)
    return version.to_dict()


@router.post("/jobs/{entity_type}/{record_id}/retry", response_model=SyncJobResponse)
async def retry_job(
    entity_type: str, record_id: str, service: SyncService = service_dependency
) -> Dict[str, Any]:
    """Requeue a dead-lettered or rejected record."""
    try:
        job = service.retry(entity_type, record_id)
    except CareSyncError as e:
        raise _error(e) from e
    return job.to_dict()


@router.post("/trigger", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(service: SyncService = service_dependency) -> Dict[str, Any]:
    """Run a sync now."""
    if service.running:
        service.trigger()
        return {"triggered": True, "summary": None}
    summary = await service.sync_once()
    return {"triggered": True, "summary": summary}


@router.post("/resume", response_model=SyncStatusResponse)
async def resume_sync(
    request: ResumeRequest, service: SyncService = service_dependency
) -> Dict[str, Any]:
    """Resume pushes after re-authentication."""
    service.resume(request.access_token)
    return service.status().to_dict()


@router.get("/diagnostics")
async def get_diagnostics(service: SyncService = service_dependency) -> Dict[str, Any]:
    """Full diagnostics snapshot."""
    return service.diagnostics()
