"""Webhook intake: signature checks, classification, and hand-off.

CRM webhooks are verified, queued at high priority and acknowledged at once;
the webhook worker later records them, applies trigger filters and creates
the sync event. Voice platform webhooks are handled in the request path.
A signature mismatch is rejected before anything is written.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import structlog

from src.callsync.config import get_settings
from src.callsync.core.errors import AuthenticationError, NotFoundError, ValidationError
from src.callsync.core.monitoring import WEBHOOK_SIGNATURE_FAILURES, WEBHOOKS_RECEIVED
from src.callsync.pipeline.calls import CallProcessor
from src.callsync.pipeline.filters import evaluate_filters
from src.callsync.pipeline.state_machine import SyncProcessor, SyncStateMachine
from src.callsync.pipeline.workflows import WorkflowEngine
from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import Job, JobPriority, QueueName
from src.callsync.repository import SyncEventStore
from src.callsync.schemas import Integration, SyncEventType

logger = structlog.get_logger(__name__)

WEBHOOK_JOB = "process-webhook"
RETELL = "retell"
CALL_ANALYZED = "call_analyzed"

SIGNATURE_HEADERS: dict[str, str] = {
    "pipedrive": "x-pipedrive-signature",
    "hubspot": "x-hubspot-signature",
    "salesforce": "x-salesforce-signature",
    "zoho": "x-zoho-signature",
    RETELL: "x-retell-signature",
}
GENERIC_SIGNATURE_HEADERS = ("x-signature", "x-hub-signature-256")

# Body key carrying the event type, and the fallback, per provider.
EVENT_TYPE_DEFAULTS: dict[str, tuple[str, str]] = {
    "pipedrive": ("event", "data_update"),
    "hubspot": ("subscriptionType", "contact.creation"),
    "salesforce": ("eventType", "record_update"),
    "zoho": ("event_type", "module_data_updated"),
}


# ── Signatures ──────────────────────────────────────────────────────────────


def expected_signatures(raw_body: bytes, secret: str) -> list[str]:
    sha256 = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    sha1 = hmac.new(secret.encode(), raw_body, hashlib.sha1).hexdigest()
    return [f"sha256={sha256}", sha256, f"sha1={sha1}"]


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Check ``signature`` against HMAC-SHA256 (prefixed or bare) or legacy SHA-1."""
    candidate = signature.strip()
    matched = False
    for expected in expected_signatures(raw_body, secret):
        matched |= hmac.compare_digest(candidate.encode(), expected.encode())
    return matched


def signature_from_headers(provider: str, headers: Mapping[str, str]) -> str | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    names = (SIGNATURE_HEADERS.get(provider, ""), *GENERIC_SIGNATURE_HEADERS)
    for name in names:
        if name and lowered.get(name):
            return lowered[name]
    return None


def check_signature(provider: str, integration: Integration | None, raw_body: bytes, signature: str | None) -> None:
    """Raise AuthenticationError if a present signature does not verify."""
    if not signature or integration is None:
        return
    if not verify_signature(raw_body, signature, integration.webhook_secret):
        WEBHOOK_SIGNATURE_FAILURES.labels(provider=provider).inc()
        logger.warning("webhook.signature_invalid", provider=provider, integration_id=integration.id)
        raise AuthenticationError("Invalid webhook signature")


# ── Classification ──────────────────────────────────────────────────────────


def parse_body(raw_body: bytes) -> dict[str, Any]:
    if not raw_body:
        return {}
    try:
        body = json.loads(raw_body)
    except ValueError as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return body


def classify(provider_hint: str | None, headers: Mapping[str, str], body: dict[str, Any]) -> tuple[str, str]:
    """Work out ``(provider, event_type)`` for an inbound CRM webhook.

    The provider comes from the URL, then the ``X-Provider`` header, then the
    body's ``source``. The event type comes from ``X-Event-Type``, then the
    provider's own body key, then the provider default.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    provider = (provider_hint or lowered.get("x-provider") or body.get("source") or "unknown").lower()

    if lowered.get("x-event-type"):
        return provider, lowered["x-event-type"]

    key, default = EVENT_TYPE_DEFAULTS.get(provider, ("", "data_update"))
    for candidate in (key, "event_type", "event"):
        if candidate and body.get(candidate):
            return provider, str(body[candidate])
    return provider, default


# ── Intake ──────────────────────────────────────────────────────────────────


class WebhookIntake:
    """Entry points for both webhook shapes and for queued webhook jobs."""

    def __init__(
        self,
        store: SyncEventStore,
        queue: JobQueue,
        state_machine: SyncStateMachine,
        processor: SyncProcessor,
        workflows: WorkflowEngine,
        calls: CallProcessor,
    ) -> None:
        self._store = store
        self._queue = queue
        self._state_machine = state_machine
        self._processor = processor
        self._workflows = workflows
        self._calls = calls

    async def accept_crm_webhook(
        self,
        integration_id: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        provider_hint: str | None = None,
    ) -> Job:
        """Verify and enqueue a CRM webhook; the caller acknowledges right away.

        Raises:
            AuthenticationError: A signature was sent and does not verify.
            ValidationError: The body is not a JSON object.
        """
        body = parse_body(raw_body)
        provider, event_type = classify(provider_hint, headers, body)
        signature = signature_from_headers(provider, headers)

        integration = await self._store.get_integration(integration_id)
        check_signature(provider, integration, raw_body, signature)

        job = await self._queue.enqueue(
            QueueName.WEBHOOK,
            WEBHOOK_JOB,
            {
                "integration_id": integration_id,
                "provider": provider,
                "event_type": event_type,
                "payload": body,
                "signature": signature,
            },
            priority=JobPriority.HIGH,
        )
        WEBHOOKS_RECEIVED.labels(provider=provider, shape="crm").inc()
        logger.info(
            "webhook.accepted",
            provider=provider,
            event_type=event_type,
            integration_id=integration_id,
            job_id=job.job_id,
        )
        return job

    async def enqueue_test_webhook(
        self,
        integration_id: str,
        provider: str = "test",
        event_type: str = "test_event",
        payload: dict[str, Any] | None = None,
    ) -> Job:
        """Queue a synthetic webhook, marked ``test``, for an integration."""
        job = await self._queue.enqueue(
            QueueName.WEBHOOK,
            WEBHOOK_JOB,
            {
                "integration_id": integration_id,
                "provider": provider,
                "event_type": event_type,
                "payload": {
                    **(payload or {}),
                    "test": True,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                "signature": None,
            },
            priority=JobPriority.HIGH,
        )
        logger.info("webhook.test_queued", integration_id=integration_id, job_id=job.job_id)
        return job

    async def process_webhook_job(self, data: dict[str, Any]) -> dict[str, Any]:
        """Record a queued webhook and turn it into a pending sync event."""
        integration_id = data["integration_id"]
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            logger.warning("webhook.integration_missing", integration_id=integration_id)
            return {"success": False, "reason": "Integration not found or inactive"}

        webhook_event = await self._store.create_webhook_event(
            integration_id=integration.id,
            provider=data.get("provider", "unknown"),
            event_type=data.get("event_type", "data_update"),
            payload=data.get("payload") or {},
            signature=data.get("signature"),
        )

        if not integration.is_active:
            logger.warning("webhook.integration_inactive", integration_id=integration.id)
            return {"success": False, "reason": "Integration not found or inactive"}

        payload = data.get("payload") or {}
        if not evaluate_filters(payload, integration.trigger_filters):
            logger.info("webhook.filters_not_matched", integration_id=integration.id)
            return {"success": True, "reason": "Filters not matched"}

        sync_event = await self._store.create_sync_event(
            integration_id=integration.id,
            event_type=SyncEventType.WEBHOOK_RECEIVED,
            source_data=payload,
            max_retries=get_settings().SYNC_MAX_RETRIES,
        )
        await self._state_machine.enqueue(sync_event)
        await self._store.mark_webhook_processed(webhook_event.id)

        logger.info("webhook.processed", integration_id=integration.id, sync_event_id=sync_event.id)
        return {"success": True, "sync_event_id": sync_event.id}

    async def handle_retell_webhook(
        self, integration_id: str, raw_body: bytes, headers: Mapping[str, str]
    ) -> dict[str, Any]:
        """Process a voice platform status webhook synchronously.

        Downstream CRM failures are logged and never fail the request.

        Raises:
            NotFoundError: Unknown integration.
            AuthenticationError: A signature was sent and does not verify.
        """
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            raise NotFoundError("Integration not found")

        check_signature(RETELL, integration, raw_body, signature_from_headers(RETELL, headers))
        payload = parse_body(raw_body)
        WEBHOOKS_RECEIVED.labels(provider=RETELL, shape="voice").inc()

        event = payload.get("event") or payload.get("event_type") or "unknown"
        await self._store.create_webhook_event(
            integration_id=integration.id,
            provider=RETELL,
            event_type=event,
            payload=payload,
            processed=True,
        )

        call = payload.get("call") if isinstance(payload.get("call"), dict) else payload
        analyzed = event == CALL_ANALYZED
        ended_with_transcript = call.get("call_status") == "ended" and bool(call.get("transcript"))

        if analyzed or ended_with_transcript:
            try:
                await self._calls.process(integration, payload)
            except Exception as exc:
                logger.error("retell.call_processing_failed", integration_id=integration.id, error=str(exc))

        if analyzed:
            await self._run_business_logic(integration, payload)

        call_id = call.get("call_id")
        if call_id:
            sync_event = await self._store.find_sync_event_by_call_id(integration.id, call_id)
            if sync_event is not None:
                await self._state_machine.apply_call_status(sync_event, event)

        logger.info("retell.webhook_processed", integration_id=integration.id, retell_event=event, call_id=call_id)
        return {"success": True}

    async def _run_business_logic(self, integration: Integration, payload: dict[str, Any]) -> None:
        try:
            results = await self._workflows.execute_workflows(integration, CALL_ANALYZED, payload)
            logger.info(
                "retell.workflows_executed",
                integration_id=integration.id,
                workflows=len(results),
                succeeded=sum(1 for r in results if r.succeeded),
            )
        except Exception as exc:
            logger.error("retell.workflows_failed", integration_id=integration.id, error=str(exc))

        if not integration.field_mappings:
            return
        try:
            await self._processor.write_mapped(integration, payload)
        except Exception as exc:
            logger.error("retell.field_mapping_failed", integration_id=integration.id, error=str(exc))
