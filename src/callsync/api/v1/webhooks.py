"""Inbound webhook endpoints.

CRM webhooks are verified, queued and acknowledged without waiting for
downstream processing. Retell status webhooks are processed in the request.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from src.callsync.pipeline.intake import WebhookIntake

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class TestWebhookRequest(BaseModel):
    provider: str = "test"
    event_type: str = Field(default="test_event", alias="eventType")
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}


def _get_intake(request: Request) -> WebhookIntake:
    """Retrieve WebhookIntake from app.state, 503 if not available."""
    intake = getattr(request.app.state, "webhook_intake", None)
    if intake is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook intake not initialized",
        )
    return intake


def _get_store(request: Request) -> Any:
    store = getattr(request.app.state, "sync_store", None)
    if store is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync store not initialized",
        )
    return store


# Fixed paths are declared before the parameterised provider route.


@router.post("/retell/{integration_id}")
async def retell_webhook(integration_id: str, request: Request) -> dict:
    intake = _get_intake(request)
    return await intake.handle_retell_webhook(integration_id, await request.body(), request.headers)


@router.post("/{integration_id}/test")
async def test_webhook(integration_id: str, body: TestWebhookRequest, request: Request) -> dict:
    intake = _get_intake(request)
    await intake.enqueue_test_webhook(integration_id, body.provider, body.event_type, body.payload)
    return {"success": True, "message": "Test webhook queued for processing"}


@router.get("/{integration_id}/validate", response_model=None)
async def validate_webhook(
    integration_id: str,
    challenge: str | None = Query(default=None),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> PlainTextResponse | dict:
    """Echo a provider's subscription challenge, or confirm the endpoint is live."""
    echo = challenge or hub_challenge
    if echo:
        return PlainTextResponse(echo)
    return {
        "success": True,
        "message": "Webhook endpoint is active",
        "webhookId": integration_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/{integration_id}/logs")
async def webhook_logs(
    integration_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> dict:
    store = _get_store(request)
    events, total = await store.list_webhook_events(integration_id, page=page, limit=limit)
    return {
        "success": True,
        "data": [e.model_dump(mode="json") for e in events],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": -(-total // limit),
        },
    }


@router.post("/{provider}/{integration_id}")
async def provider_webhook(provider: str, integration_id: str, request: Request) -> dict:
    intake = _get_intake(request)
    await intake.accept_crm_webhook(
        integration_id, await request.body(), request.headers, provider_hint=provider
    )
    return {"success": True}


@router.post("/{integration_id}")
async def generic_webhook(integration_id: str, request: Request) -> dict:
    intake = _get_intake(request)
    await intake.accept_crm_webhook(integration_id, await request.body(), request.headers)
    return {"success": True, "message": "Webhook received and queued for processing"}
