"""Sync event browsing, manual retry, CSV export and integration health."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import Response

from src.callsync.core.errors import NotFoundError
from src.callsync.pipeline import reporting
from src.callsync.pipeline.state_machine import SyncStateMachine
from src.callsync.schemas import (
    IntegrationHealth,
    SyncEvent,
    SyncEventFilter,
    SyncEventPage,
    SyncEventType,
    SyncStatus,
)

router = APIRouter(tags=["sync"])

EXPORT_PAGE_SIZE = 100
EXPORT_MAX_EVENTS = 10_000


def _get_store(request: Request) -> Any:
    """Retrieve the sync store from app.state, 503 if not available."""
    store = getattr(request.app.state, "sync_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync store not initialized",
        )
    return store


def _get_state_machine(request: Request) -> SyncStateMachine:
    machine = getattr(request.app.state, "state_machine", None)
    if machine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync processing not initialized",
        )
    return machine


@router.get("/sync-events", response_model=SyncEventPage)
async def list_sync_events(
    request: Request,
    integration_id: str | None = Query(default=None),
    status_filter: SyncStatus | None = Query(default=None, alias="status"),
    event_type: SyncEventType | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> SyncEventPage:
    store = _get_store(request)
    return await store.list_sync_events(
        SyncEventFilter(
            integration_id=integration_id,
            status=status_filter,
            event_type=event_type,
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
        )
    )


@router.get("/sync-events/export")
async def export_sync_events(
    request: Request,
    integration_id: str | None = Query(default=None),
    status_filter: SyncStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
) -> Response:
    """Download matching sync events, newest first, as CSV."""
    store = _get_store(request)
    events: list[SyncEvent] = []
    page = 1
    while len(events) < EXPORT_MAX_EVENTS:
        result = await store.list_sync_events(
            SyncEventFilter(
                integration_id=integration_id,
                status=status_filter,
                start_date=start_date,
                end_date=end_date,
                page=page,
                limit=EXPORT_PAGE_SIZE,
            )
        )
        events.extend(result.events)
        if page >= result.pagination.total_pages:
            break
        page += 1

    names: dict[str, str] = {}
    for owner_id in {e.integration_id for e in events}:
        integration = await store.get_integration(owner_id)
        names[owner_id] = integration.name if integration else ""

    return Response(
        content=reporting.export_csv(events[:EXPORT_MAX_EVENTS], names),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{reporting.export_filename()}"'},
    )


@router.get("/sync-events/{sync_event_id}", response_model=SyncEvent)
async def get_sync_event(sync_event_id: str, request: Request) -> SyncEvent:
    store = _get_store(request)
    event = await store.get_sync_event(sync_event_id)
    if event is None:
        raise NotFoundError("Sync event not found")
    return event


@router.post("/sync-events/{sync_event_id}/retry")
async def retry_sync_event(sync_event_id: str, request: Request) -> dict:
    machine = _get_state_machine(request)
    await machine.retry_failed(sync_event_id)
    return {"success": True, "message": "Sync event queued for retry"}


@router.get("/integrations/{integration_id}/health", response_model=IntegrationHealth)
async def integration_health(integration_id: str, request: Request) -> IntegrationHealth:
    store = _get_store(request)
    if await store.get_integration(integration_id) is None:
        raise NotFoundError("Integration not found")
    return await reporting.integration_health(store, integration_id)
