"""REST API endpoints for CRM sync operations.

All routes are scoped by owner: ``/api/v1/sync/{owner_id}/...``. Writes
enqueue work and return immediately; drains run in the background.
Authentication is handled upstream (gateway), not here.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.dealsync.sync.exceptions import (
    ConflictNotFound,
    InvalidReference,
    SubscriptionError,
    SyncNotConfigured,
)
from src.dealsync.sync.schemas import (
    DrainResult,
    OperationType,
    PollReport,
    ResolutionStrategy,
    SyncConfig,
    SyncConflict,
    SyncDataView,
    SyncLogEntry,
    SyncQueueItem,
    SyncStats,
)
from src.dealsync.sync.service import SyncService

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class TriggerSyncRequest(BaseModel):
    """Request body for a manual sync trigger."""

    record_id: str
    operation: OperationType = OperationType.UPDATE
    priority: int = Field(default=5, ge=1, le=9)
    allow_when_disabled: bool = False


class PushRecordRequest(BaseModel):
    force_amount: bool = False


class ResolveConflictRequest(BaseModel):
    """Request body for resolving a conflict manually."""

    strategy: ResolutionStrategy
    resolved_by: str = Field(min_length=1)


class RetryFailedResponse(BaseModel):
    reset: int


class ActivationResponse(BaseModel):
    owner_id: str
    jobs: list[str] = Field(default_factory=list)


# ── Dependency Injection Helper ──────────────────────────────────────────────


def get_sync_service(request: Request) -> SyncService:
    """Retrieve SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return service


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (InvalidReference, ConflictNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, SyncNotConfigured):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, SubscriptionError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))


_HANDLED = (InvalidReference, ConflictNotFound, SyncNotConfigured, SubscriptionError, ValueError)


# ── Sync Data ────────────────────────────────────────────────────────────────


@router.get("/{owner_id}", response_model=SyncDataView)
async def get_sync_data(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncDataView:
    """Recent queue items, stats and pending conflicts for the owner."""
    return await service.facade.load_sync_data(owner_id)


@router.get("/{owner_id}/queue", response_model=list[SyncQueueItem])
async def list_queue(
    owner_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    service: SyncService = Depends(get_sync_service),
) -> list[SyncQueueItem]:
    return await service.queue.list_recent(owner_id, limit)


@router.get("/{owner_id}/stats", response_model=SyncStats)
async def get_stats(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncStats:
    return await service.queue.stats(owner_id)


@router.get("/{owner_id}/logs", response_model=list[SyncLogEntry])
async def list_logs(
    owner_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    service: SyncService = Depends(get_sync_service),
) -> list[SyncLogEntry]:
    """Newest sync log entries of the owner."""
    if service.sync_log is None:
        return []
    return await service.sync_log.list_recent(owner_id, limit)


# ── Triggers ─────────────────────────────────────────────────────────────────


@router.post(
    "/{owner_id}/trigger",
    response_model=SyncQueueItem,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    owner_id: str,
    body: TriggerSyncRequest,
    service: SyncService = Depends(get_sync_service),
) -> SyncQueueItem:
    """Enqueue one operation; the queue is drained shortly afterwards."""
    try:
        return await service.facade.trigger_sync(
            owner_id,
            body.record_id,
            operation=body.operation,
            priority=body.priority,
            allow_when_disabled=body.allow_when_disabled,
        )
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc


@router.post("/{owner_id}/process", response_model=DrainResult)
async def process_queue(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> DrainResult:
    """Run one bounded drain now."""
    try:
        return await service.facade.process_now(owner_id)
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc


@router.post("/{owner_id}/retry-failed", response_model=RetryFailedResponse)
async def retry_failed(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> RetryFailedResponse:
    return RetryFailedResponse(reset=await service.facade.retry_failed_items(owner_id))


@router.post("/{owner_id}/amounts", status_code=status.HTTP_202_ACCEPTED)
async def sync_all_amounts(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """Push the amount of every record that has one."""
    try:
        return await service.facade.sync_all_amounts(owner_id)
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc


@router.post(
    "/{owner_id}/records/{record_id}/push",
    response_model=SyncQueueItem,
    status_code=status.HTTP_202_ACCEPTED,
)
async def push_record(
    owner_id: str,
    record_id: str,
    body: PushRecordRequest | None = None,
    service: SyncService = Depends(get_sync_service),
) -> SyncQueueItem:
    force_amount = body.force_amount if body else False
    try:
        return await service.facade.sync_to_remote(owner_id, record_id, force_amount)
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc


@router.post(
    "/{owner_id}/records/{record_id}/pull",
    response_model=SyncQueueItem,
    status_code=status.HTTP_202_ACCEPTED,
)
async def pull_record(
    owner_id: str,
    record_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncQueueItem:
    try:
        return await service.facade.sync_from_remote(owner_id, record_id)
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc


@router.post("/{owner_id}/poll", response_model=PollReport)
async def poll_remote(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> PollReport:
    return await service.facade.poll_remote(owner_id)


# ── Conflicts ────────────────────────────────────────────────────────────────


@router.get("/{owner_id}/conflicts", response_model=list[SyncConflict])
async def list_conflicts(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncConflict]:
    return await service.resolver.list_pending(owner_id)


@router.post(
    "/{owner_id}/conflicts/{conflict_id}/resolve",
    response_model=SyncQueueItem,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resolve_conflict(
    owner_id: str,
    conflict_id: str,
    body: ResolveConflictRequest,
    service: SyncService = Depends(get_sync_service),
) -> SyncQueueItem:
    """Settle a conflict; the winning side is synced at priority 1."""
    try:
        return await service.facade.resolve_conflict(
            owner_id, conflict_id, body.strategy, body.resolved_by
        )
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc


# ── Configuration & Activation ───────────────────────────────────────────────


@router.get("/{owner_id}/config", response_model=SyncConfig)
async def get_config(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> SyncConfig:
    return await service.configs.get(owner_id)


@router.put("/{owner_id}/config", response_model=ActivationResponse)
async def put_config(
    owner_id: str,
    body: SyncConfig,
    service: SyncService = Depends(get_sync_service),
) -> ActivationResponse:
    """Save the owner's configuration and re-apply timers and channels."""
    try:
        jobs = await service.update_config(owner_id, body)
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc
    return ActivationResponse(owner_id=owner_id, jobs=jobs)


@router.post("/{owner_id}/activate", response_model=ActivationResponse)
async def activate_owner(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> ActivationResponse:
    try:
        jobs = await service.activate_owner(owner_id)
    except _HANDLED as exc:
        raise _to_http_error(exc) from exc
    return ActivationResponse(owner_id=owner_id, jobs=jobs)


@router.post("/{owner_id}/deactivate", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_owner(
    owner_id: str,
    service: SyncService = Depends(get_sync_service),
) -> None:
    await service.deactivate_owner(owner_id)
