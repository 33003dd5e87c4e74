"""REST API endpoints for Notion sync operations.

Provides the manual trigger, the operator health snapshot, reconciliation
controls, dead-letter replay and a diagnostic view of a project's Notion
page. Work is always handed to the background workers; nothing here calls
Notion inline except the diagnostic view.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.delivery_sync.projects.schemas import SyncStatus
from src.delivery_sync.sync.errors import (
    EntityNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    SyncError,
)
from src.delivery_sync.sync.schemas import (
    DiscrepancyReport,
    RemoteView,
    ScanScope,
    SyncHealth,
    SyncIndicator,
    sync_indicator,
)

router = APIRouter(prefix="/sync", tags=["sync"])

# Accepted values of the {entity_type} path segment
ENTITY_TYPES = frozenset({"projects", "project"})


# ── Response Schemas ─────────────────────────────────────────────────────────


class TriggerResponse(BaseModel):
    """Response for an accepted manual sync trigger."""

    entity_id: str
    task_id: str
    sync_status: SyncStatus
    indicator: SyncIndicator
    last_sync_error: str | None = None


class HealthResponse(SyncHealth):
    """Sync health snapshot, plus whether an on-demand scan was started."""

    scan_started: bool = False


class ReconcileRequest(BaseModel):
    """Request body for an on-demand reconciliation scan."""

    entity_ids: list[str] | None = None
    limit: int | None = Field(default=None, ge=1)
    auto_heal: bool = True


class CancelResponse(BaseModel):
    cancelled: bool


class ReplayResponse(BaseModel):
    entity_id: str
    task_id: str
    direction: str


# ── Helpers ──────────────────────────────────────────────────────────────────


def _get_sync_service(request: Request) -> Any:
    """Retrieve SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notion sync not initialized",
        )
    return service


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def sync_health(
    request: Request,
    scan: bool = Query(default=False, description="Start a reconciliation scan in the background"),
) -> HealthResponse:
    """Counts by sync status, queue depth, dead letters and the latest discrepancy report."""
    service = _get_sync_service(request)
    scan_started = service.start_reconcile() if scan else False
    snapshot = await service.health()
    return HealthResponse(**snapshot.model_dump(), scan_started=scan_started)


@router.post("/reconcile", response_model=DiscrepancyReport)
async def run_reconciliation(
    request: Request,
    body: ReconcileRequest | None = None,
) -> DiscrepancyReport:
    """Run a reconciliation scan now and return its report."""
    service = _get_sync_service(request)
    body = body or ReconcileRequest()
    scope = ScanScope(entity_ids=body.entity_ids, limit=body.limit, auto_heal=body.auto_heal)
    return await service.reconcile(scope)


@router.post("/reconcile/cancel", response_model=CancelResponse)
async def cancel_reconciliation(request: Request) -> CancelResponse:
    """Stop the running scan after its current batch."""
    service = _get_sync_service(request)
    return CancelResponse(cancelled=service.cancel_reconcile())


@router.post("/dead-letters/{entity_id}/replay", response_model=ReplayResponse)
async def replay_dead_letter(entity_id: str, request: Request) -> ReplayResponse:
    """Re-run a dead-lettered project from attempt zero."""
    service = _get_sync_service(request)
    try:
        task = await service.replay_dead_letter(entity_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ReplayResponse(entity_id=entity_id, task_id=task.task_id, direction=task.direction.value)


@router.get("/projects/{entity_id}/remote", response_model=RemoteView)
async def get_remote_view(entity_id: str, request: Request) -> RemoteView:
    """Show the linked Notion page as the sync engine sees it."""
    service = _get_sync_service(request)
    try:
        return await service.remote_view(entity_id)
    except (EntityNotFoundError, NotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except SyncError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{exc.kind}: {exc}",
        ) from exc


@router.post(
    "/{entity_type}/{entity_id}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(entity_type: str, entity_id: str, request: Request) -> TriggerResponse:
    """Enqueue a manual PUSH; the response reports the current sync status."""
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown entity type: {entity_type}",
        )
    service = _get_sync_service(request)
    try:
        entity, task = await service.trigger(entity_id)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return TriggerResponse(
        entity_id=entity.id,
        task_id=task.task_id,
        sync_status=entity.sync_status,
        indicator=sync_indicator(entity.sync_status),
        last_sync_error=entity.last_sync_error,
    )
