"""Tests for webhook intake.

Covers:
- Signature verification: HMAC-SHA256 prefixed and bare, legacy SHA-1
- Signature header lookup per provider and generic fallbacks
- Provider and event type classification
- CRM webhook acceptance: queued at high priority, bad signatures rejected
  before anything is queued
- Webhook job processing: audit record, trigger filters, sync event creation
- Retell status webhooks: call processing, workflows, sync event status that
  never moves back out of completed
"""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest

from src.callsync.core.errors import AuthenticationError, NotFoundError, ValidationError
from src.callsync.pipeline.intake import (
    classify,
    parse_body,
    signature_from_headers,
    verify_signature,
)
from src.callsync.pipeline.workflows import consultation_booking_template
from src.callsync.queue.schemas import JobPriority, QueueName
from src.callsync.schemas import (
    FieldMapping,
    SyncEventType,
    SyncStatus,
    TriggerFilter,
)

SECRET = "s3cret"


def _sha256(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _sha1(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()


# ── Signatures ───────────────────────────────────────────────────────────────


class TestVerifySignature:
    BODY = b'{"event":"updated.deal"}'

    def test_prefixed_sha256(self):
        assert verify_signature(self.BODY, f"sha256={_sha256(self.BODY)}", SECRET)

    def test_bare_sha256(self):
        assert verify_signature(self.BODY, _sha256(self.BODY), SECRET)

    def test_legacy_sha1(self):
        assert verify_signature(self.BODY, f"sha1={_sha1(self.BODY)}", SECRET)

    def test_wrong_secret(self):
        assert not verify_signature(self.BODY, _sha256(self.BODY, "other"), SECRET)

    def test_tampered_body(self):
        assert not verify_signature(b'{"event":"deleted.deal"}', _sha256(self.BODY), SECRET)


class TestSignatureHeaders:
    def test_provider_header(self):
        assert signature_from_headers("pipedrive", {"X-Pipedrive-Signature": "abc"}) == "abc"

    def test_generic_fallback(self):
        assert signature_from_headers("hubspot", {"X-Hub-Signature-256": "sha256=abc"}) == "sha256=abc"

    def test_other_provider_header_ignored(self):
        assert signature_from_headers("hubspot", {"x-pipedrive-signature": "abc"}) is None


# ── Classification ───────────────────────────────────────────────────────────


class TestClassify:
    def test_url_hint_and_provider_body_key(self):
        assert classify("pipedrive", {}, {"event": "updated.deal"}) == ("pipedrive", "updated.deal")

    def test_event_type_header_wins(self):
        headers = {"X-Event-Type": "deal.won"}
        assert classify("pipedrive", headers, {"event": "updated.deal"}) == ("pipedrive", "deal.won")

    def test_provider_header(self):
        body = {"subscriptionType": "contact.propertyChange"}
        assert classify(None, {"X-Provider": "HubSpot"}, body) == ("hubspot", "contact.propertyChange")

    def test_provider_from_body_with_default_event(self):
        assert classify(None, {}, {"source": "salesforce"}) == ("salesforce", "record_update")

    def test_unknown_provider(self):
        assert classify(None, {}, {}) == ("unknown", "data_update")


class TestParseBody:
    def test_empty_body(self):
        assert parse_body(b"") == {}

    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]"])
    def test_rejects_non_objects(self, raw):
        with pytest.raises(ValidationError):
            parse_body(raw)


# ── CRM Webhook Acceptance ───────────────────────────────────────────────────


class TestAcceptCrmWebhook:
    BODY = json.dumps({"event": "updated.deal", "current": {"id": 5}}).encode()

    async def test_signed_webhook_is_queued(self, intake, store, queue, make_integration):
        store.add_integration(make_integration())

        job = await intake.accept_crm_webhook(
            "int-1", self.BODY, {"X-Pipedrive-Signature": f"sha256={_sha256(self.BODY)}"}, provider_hint="pipedrive"
        )

        assert job.queue == QueueName.WEBHOOK
        assert job.priority == JobPriority.HIGH
        assert job.data["provider"] == "pipedrive"
        assert job.data["event_type"] == "updated.deal"
        assert job.data["payload"] == {"event": "updated.deal", "current": {"id": 5}}
        assert len(queue.jobs) == 1
        assert store.webhook_events == {}

    async def test_bad_signature_rejected_before_queueing(self, intake, store, queue, make_integration):
        store.add_integration(make_integration())

        with pytest.raises(AuthenticationError, match="Invalid webhook signature"):
            await intake.accept_crm_webhook(
                "int-1", self.BODY, {"X-Pipedrive-Signature": "sha256=deadbeef"}, provider_hint="pipedrive"
            )

        assert queue.jobs == []
        assert store.webhook_events == {}

    async def test_unsigned_webhook_accepted(self, intake, store, queue, make_integration):
        store.add_integration(make_integration())
        await intake.accept_crm_webhook("int-1", self.BODY, {}, provider_hint="pipedrive")
        assert len(queue.jobs) == 1

    async def test_unknown_integration_still_acknowledged(self, intake, queue):
        await intake.accept_crm_webhook("missing", self.BODY, {"X-Signature": "whatever"})
        assert len(queue.jobs) == 1

    async def test_test_webhook_marked(self, intake, queue):
        job = await intake.enqueue_test_webhook("int-1", payload={"name": "Jane"})

        assert job.data["provider"] == "test"
        assert job.data["event_type"] == "test_event"
        assert job.data["payload"]["test"] is True
        assert job.data["payload"]["name"] == "Jane"
        assert "timestamp" in job.data["payload"]


# ── Webhook Job Processing ───────────────────────────────────────────────────


class TestProcessWebhookJob:
    def _data(self, payload=None) -> dict:
        return {
            "integration_id": "int-1",
            "provider": "pipedrive",
            "event_type": "updated.deal",
            "payload": payload or {"current": {"status": "won"}},
            "signature": None,
        }

    async def test_creates_pending_sync_event(self, intake, store, queue, make_integration):
        store.add_integration(make_integration())

        result = await intake.process_webhook_job(self._data())

        [sync_event] = store.sync_events.values()
        assert result == {"success": True, "sync_event_id": sync_event.id}
        assert sync_event.status == SyncStatus.PENDING
        assert sync_event.event_type == SyncEventType.WEBHOOK_RECEIVED
        assert sync_event.source_data == {"current": {"status": "won"}}
        assert sync_event.max_retries == 3

        [webhook_event] = store.webhook_events.values()
        assert webhook_event.processed is True

        [(job, delay)] = queue.on(QueueName.SYNC)
        assert job.data["sync_event_id"] == sync_event.id
        assert delay == 0

    async def test_filters_not_matched(self, intake, store, queue, make_integration):
        store.add_integration(
            make_integration(
                trigger_filters=[TriggerFilter(field="current.status", operator="equals", value="lost")]
            )
        )

        result = await intake.process_webhook_job(self._data())

        assert result == {"success": True, "reason": "Filters not matched"}
        assert store.sync_events == {}
        [webhook_event] = store.webhook_events.values()
        assert webhook_event.processed is False

    async def test_inactive_integration_recorded_but_not_synced(self, intake, store, make_integration):
        store.add_integration(make_integration(is_active=False))

        result = await intake.process_webhook_job(self._data())

        assert result["success"] is False
        assert len(store.webhook_events) == 1
        assert store.sync_events == {}

    async def test_missing_integration_records_nothing(self, intake, store):
        result = await intake.process_webhook_job(self._data())

        assert result["success"] is False
        assert store.webhook_events == {}


# ── Retell Webhooks ──────────────────────────────────────────────────────────


def _retell_body(event: str = "call_analyzed", **call_overrides) -> bytes:
    call = {
        "call_id": "call-123",
        "direction": "inbound",
        "from_number": "+447700900123",
        "call_status": "ended",
        "duration_ms": 95_000,
        "transcript": "Agent: Hello\nUser: Hi, I need a quote",
        "start_timestamp": 1_700_000_000_000,
        "call_analysis": {
            "call_successful": True,
            "call_summary": "Jane Doe called about a roof repair.",
            "custom_analysis_data": {"appointment_booked": "yes", "customer_name": "Jane Doe"},
        },
    }
    call.update(call_overrides)
    return json.dumps({"event": event, "call": call}).encode()


class TestRetellWebhook:
    async def test_call_analyzed_runs_everything(self, intake, store, crm, make_integration, make_sync_event):
        store.add_integration(
            make_integration(
                business_workflows=[consultation_booking_template()],
                field_mappings=[
                    FieldMapping(source_field="call.call_analysis.call_summary", target_field="activity.subject")
                ],
            )
        )
        sync_event = store.add_sync_event(make_sync_event(call_id="call-123", status=SyncStatus.COMPLETED))

        result = await intake.handle_retell_webhook("int-1", _retell_body(), {})

        assert result == {"success": True}
        [webhook_event] = store.webhook_events.values()
        assert webhook_event.provider == "retell"
        assert webhook_event.event_type == "call_analyzed"
        assert webhook_event.processed is True

        subjects = [a.get("subject") for a in crm.called("create_activity")]
        assert "Inbound Call: Answered" in subjects  # call processor
        assert "Consultation Call" in subjects  # workflow
        assert "Jane Doe called about a roof repair." in subjects  # field mappings

        assert store.sync_events[sync_event.id].status == SyncStatus.COMPLETED

    async def test_call_ended_completes_sync_event(self, intake, store, crm, make_integration, make_sync_event):
        store.add_integration(make_integration())
        sync_event = store.add_sync_event(
            make_sync_event(call_id="call-123", event_type=SyncEventType.CALL_TRIGGERED)
        )

        await intake.handle_retell_webhook("int-1", _retell_body("call_ended", transcript=""), {})

        updated = store.sync_events[sync_event.id]
        assert updated.status == SyncStatus.COMPLETED
        assert updated.processed_at is not None
        assert crm.calls == []

    async def test_call_lifecycle_never_regresses(self, intake, store, make_integration, make_sync_event):
        store.add_integration(make_integration())
        sync_event = store.add_sync_event(
            make_sync_event(call_id="call-123", event_type=SyncEventType.CALL_TRIGGERED)
        )

        await intake.handle_retell_webhook(
            "int-1", _retell_body("call_started", call_status="ongoing", transcript=""), {}
        )
        assert store.sync_events[sync_event.id].status == SyncStatus.PROCESSING

        await intake.handle_retell_webhook("int-1", _retell_body("call_ended", transcript=""), {})
        completed = store.sync_events[sync_event.id]
        assert completed.status == SyncStatus.COMPLETED

        await intake.handle_retell_webhook("int-1", _retell_body("call_analyzed"), {})
        final = store.sync_events[sync_event.id]
        assert final.status == SyncStatus.COMPLETED
        assert final.processed_at == completed.processed_at

    async def test_call_ended_with_transcript_logs_call_once(self, intake, store, crm, make_integration):
        store.add_integration(make_integration())

        await intake.handle_retell_webhook("int-1", _retell_body("call_ended"), {})

        assert len(crm.called("create_activity")) == 1

    async def test_crm_failure_does_not_fail_request(self, intake, store, crm, make_integration):
        store.add_integration(make_integration(business_workflows=[consultation_booking_template()]))
        crm.failing.update({"create_person", "create_activity"})

        result = await intake.handle_retell_webhook("int-1", _retell_body(), {})

        assert result == {"success": True}

    async def test_unknown_integration(self, intake):
        with pytest.raises(NotFoundError):
            await intake.handle_retell_webhook("missing", _retell_body(), {})

    async def test_bad_signature_writes_nothing(self, intake, store, crm, make_integration):
        store.add_integration(make_integration())

        with pytest.raises(AuthenticationError):
            await intake.handle_retell_webhook("int-1", _retell_body(), {"X-Retell-Signature": "nope"})

        assert store.webhook_events == {}
        assert crm.calls == []

    async def test_valid_signature_accepted(self, intake, store, make_integration):
        store.add_integration(make_integration())
        body = _retell_body("call_started")

        result = await intake.handle_retell_webhook("int-1", body, {"X-Retell-Signature": _sha256(body)})

        assert result == {"success": True}
