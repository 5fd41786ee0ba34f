"""Sync event lifecycle: processing, retry with backoff, notifications.

    pending -> processing -> completed
                          -> retrying -> processing -> ...
                          -> failed

Each attempt makes two writes to the sync event: one entering ``processing``
and one terminal update for the attempt. Retries are scheduled by enqueuing
a delayed sync job; the worker pool guarantees that no two workers hold the
same sync event id at once.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from src.callsync.config import Settings, get_settings
from src.callsync.core.errors import NotFoundError, ValidationError, is_retryable
from src.callsync.core.monitoring import SYNC_EVENTS
from src.callsync.crm.registry import CRMRegistry
from src.callsync.pipeline.calls import find_person_by_email, find_person_by_phone
from src.callsync.pipeline.field_mapping import FieldMappingEngine, apply_transform
from src.callsync.pipeline.webhook_urls import WebhookUrlConfig
from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import QueueName
from src.callsync.repository import SyncEventStore
from src.callsync.schemas import (
    CallConfiguration,
    FieldMapping,
    Integration,
    NotificationMessage,
    NotificationTemplate,
    SyncEvent,
    SyncEventType,
    SyncStatus,
)
from src.callsync.utils.paths import get_path
from src.callsync.voice.retell import RetellClient, format_dial_number, is_dialable

logger = structlog.get_logger(__name__)

SYNC_JOB = "process-sync"
NOTIFICATION_JOB = "send-notification"
CALL_ENDED = "call_ended"

PHONE_FIELDS = ("customer_phone", "phone", "phoneNumber", "mobile", "telephone")

CallClientFactory = Callable[[CallConfiguration], RetellClient]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _retell_client(call_configuration: CallConfiguration) -> RetellClient:
    return RetellClient(api_key=call_configuration.api_key, base_url=get_settings().RETELL_API_BASE_URL)


def map_flat(source: dict[str, Any], mappings: list[FieldMapping]) -> dict[str, Any]:
    """Map a CRM payload onto flat call metadata keys.

    With no mappings the source payload is passed through unchanged. Missing
    required fields only warn here: the phone lookup that follows decides
    whether the call can be placed.
    """
    if not mappings:
        return dict(source)

    mapped: dict[str, Any] = {}
    for mapping in mappings:
        value = get_path(source, mapping.source_field)
        if value is None:
            if mapping.required:
                logger.warning("call_mapping.required_missing", source_field=mapping.source_field)
            continue
        mapped[mapping.target_field] = apply_transform(value, mapping.transform)
    return mapped


def extract_dial_number(mapped: dict[str, Any]) -> str | None:
    for field in PHONE_FIELDS:
        if mapped.get(field):
            candidate = format_dial_number(str(mapped[field]))
            if is_dialable(candidate):
                return candidate
    return None


def contact_value(value: Any) -> str | None:
    """Plain string from a mapped phone or email, which may be a Pipedrive value list."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or value == "":
        return None
    return str(value)


# ── Processor ───────────────────────────────────────────────────────────────


class SyncProcessor:
    """Does the work of one sync attempt, dispatched by event type.

    Returns the fields to store on the sync event when the attempt succeeds;
    raises to fail it.
    """

    def __init__(
        self,
        registry: CRMRegistry,
        webhook_urls: WebhookUrlConfig,
        mapping_engine: FieldMappingEngine | None = None,
        call_client_factory: CallClientFactory = _retell_client,
    ) -> None:
        self._registry = registry
        self._webhook_urls = webhook_urls
        self._mapping_engine = mapping_engine or FieldMappingEngine()
        self._call_client_factory = call_client_factory

    async def run(self, event: SyncEvent, integration: Integration) -> dict[str, Any]:
        if event.event_type == SyncEventType.WEBHOOK_RECEIVED:
            if integration.call_configuration is not None:
                return await self._trigger_call(event, integration, integration.call_configuration)
            return {"mapped_data": await self.write_mapped(integration, event.source_data)}
        if event.event_type in (SyncEventType.CALL_TRIGGERED, SyncEventType.SYNC_COMPLETED):
            return {}
        raise ValidationError(f"Unknown sync event type: {event.event_type}")

    async def _trigger_call(
        self, event: SyncEvent, integration: Integration, call_configuration: CallConfiguration
    ) -> dict[str, Any]:
        mapped = map_flat(event.source_data, integration.field_mappings)
        to_number = extract_dial_number(mapped)
        if to_number is None:
            raise ValidationError("No valid phone number found in mapped data")

        client = self._call_client_factory(call_configuration)
        call = await client.create_call(
            agent_id=call_configuration.agent_id,
            to_number=to_number,
            from_number=call_configuration.from_number,
            metadata=mapped,
            webhook_url=self._webhook_urls.url_for(integration.id),
        )
        logger.info("sync.call_triggered", sync_event_id=event.id, call_id=call.get("call_id"))
        return {
            "event_type": SyncEventType.CALL_TRIGGERED,
            "call_id": call.get("call_id"),
            "mapped_data": mapped,
        }

    async def write_mapped(self, integration: Integration, source: dict[str, Any]) -> dict[str, Any]:
        """Field-map ``source`` and create the person, deal and activity it yields.

        The person is looked up by phone, then email, before one is created,
        so a retried attempt reuses the contact an earlier attempt wrote. The
        deal is linked to the person and the activity to both.
        """
        account = integration.crm_account
        mapped = self._mapping_engine.transform(source, integration.field_mappings, account.crm_schema)
        adapter = self._registry.adapter_for(account)

        person_id = None
        if mapped.get("person"):
            person_data = mapped["person"]
            person_id = await find_person_by_phone(adapter, contact_value(person_data.get("phone")))
            email = contact_value(person_data.get("email"))
            if person_id is None and email:
                person_id = await find_person_by_email(adapter, email)
            if person_id is None:
                person = await adapter.create_person(person_data)
                person_id = person.get("id")
            else:
                logger.info("sync.person_matched", integration_id=integration.id, person_id=person_id)

        deal_id = None
        if mapped.get("deal"):
            deal_data = dict(mapped["deal"])
            if person_id:
                deal_data["person_id"] = person_id
            deal = await adapter.create_deal(deal_data)
            deal_id = deal.get("id")

        if mapped.get("activity"):
            activity_data = dict(mapped["activity"])
            if person_id:
                activity_data["person_id"] = person_id
            if deal_id:
                activity_data["deal_id"] = deal_id
            await adapter.create_activity(activity_data)

        logger.info(
            "sync.crm_written",
            integration_id=integration.id,
            buckets=sorted(mapped),
            person_id=person_id,
            deal_id=deal_id,
        )
        return mapped


# ── State Machine ───────────────────────────────────────────────────────────


class SyncStateMachine:
    """Drives sync events through their lifecycle.

    Args:
        store: Sync event persistence.
        queue: Job queue used for retry scheduling and notifications.
        processor: Performs the attempt itself.
        settings: Retry policy source; defaults to the application settings.
    """

    def __init__(
        self,
        store: SyncEventStore,
        queue: JobQueue,
        processor: SyncProcessor,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._processor = processor
        settings = settings or get_settings()
        self._backoff_base_ms = settings.SYNC_BACKOFF_BASE_MS
        self._backoff_cap_ms = settings.SYNC_BACKOFF_CAP_MS

    def backoff_delay_ms(self, retry_count: int) -> int:
        return min(self._backoff_base_ms * 2**retry_count, self._backoff_cap_ms)

    async def enqueue(self, sync_event: SyncEvent, delay_ms: int = 0) -> None:
        await self._queue.enqueue(
            QueueName.SYNC,
            SYNC_JOB,
            {"sync_event_id": sync_event.id, "integration_id": sync_event.integration_id},
            delay_ms=delay_ms,
            dedupe_key=sync_event.id,
        )

    async def process(self, sync_event_id: str) -> SyncEvent:
        """Run one attempt for a sync event.

        Failures are absorbed into the event's state, so this only raises
        when the event itself does not exist.
        """
        event = await self._store.get_sync_event(sync_event_id)
        if event is None:
            raise NotFoundError(f"Sync event {sync_event_id} not found")

        if event.status in (SyncStatus.COMPLETED, SyncStatus.FAILED):
            logger.info("sync_event.already_terminal", sync_event_id=event.id, status=event.status.value)
            return event

        integration = await self._store.get_integration(event.integration_id)
        if integration is None:
            raise NotFoundError(f"Integration {event.integration_id} not found")

        event = await self._store.update_sync_event(event.id, status=SyncStatus.PROCESSING)
        SYNC_EVENTS.labels(status=SyncStatus.PROCESSING.value).inc()
        logger.info(
            "sync_event.processing",
            sync_event_id=event.id,
            event_type=event.event_type.value,
            attempt=event.retry_count + 1,
        )

        try:
            changes = await self._processor.run(event, integration)
        except Exception as exc:
            return await self.record_failure(event, integration, exc)
        return await self.record_success(event, integration, changes)

    async def record_success(
        self, event: SyncEvent, integration: Integration, changes: dict[str, Any] | None = None
    ) -> SyncEvent:
        updated = await self._store.update_sync_event(
            event.id,
            **(changes or {}),
            status=SyncStatus.COMPLETED,
            processed_at=_utcnow(),
        )
        SYNC_EVENTS.labels(status=SyncStatus.COMPLETED.value).inc()
        logger.info("sync_event.completed", sync_event_id=event.id, event_type=updated.event_type.value)

        if integration.owner.success_notifications:
            await self._notify(
                NotificationMessage(
                    to=integration.owner.email,
                    subject=f"Integration Success: {integration.name}",
                    template=NotificationTemplate.SYNC_SUCCESS,
                    data={
                        "userName": integration.owner.first_name or "User",
                        "integrationName": integration.name,
                        "eventType": updated.event_type.value,
                        "processedAt": _utcnow().isoformat(),
                        "callId": updated.call_id,
                    },
                )
            )
        return updated

    async def record_failure(self, event: SyncEvent, integration: Integration, exc: BaseException) -> SyncEvent:
        error_message = str(exc) or exc.__class__.__name__
        retry_count = event.retry_count + 1
        should_retry = is_retryable(exc) and retry_count <= event.max_retries
        delay_ms = self.backoff_delay_ms(retry_count)

        # The retry job is enqueued before the event is marked retrying, so a
        # retrying event always has a job behind it.
        if should_retry:
            try:
                await self.enqueue(event, delay_ms)
            except Exception as enqueue_exc:
                logger.error(
                    "sync_event.retry_enqueue_failed",
                    sync_event_id=event.id,
                    retry_count=retry_count,
                    error=str(enqueue_exc),
                )
                error_message = f"{error_message} (retry could not be scheduled: {enqueue_exc})"
                should_retry = False

        updated = await self._store.update_sync_event(
            event.id,
            status=SyncStatus.RETRYING if should_retry else SyncStatus.FAILED,
            error_message=error_message,
            retry_count=retry_count,
        )

        if should_retry:
            SYNC_EVENTS.labels(status=SyncStatus.RETRYING.value).inc()
            logger.warning(
                "sync_event.retry_scheduled",
                sync_event_id=event.id,
                retry_count=retry_count,
                max_retries=event.max_retries,
                delay_ms=delay_ms,
                error=error_message,
            )
            return updated

        SYNC_EVENTS.labels(status=SyncStatus.FAILED.value).inc()
        logger.error(
            "sync_event.failed",
            sync_event_id=event.id,
            retry_count=retry_count,
            retryable=is_retryable(exc),
            error=error_message,
        )
        if integration.owner.error_notifications:
            await self._notify(
                NotificationMessage(
                    to=integration.owner.email,
                    subject=f"Integration Error: {integration.name}",
                    template=NotificationTemplate.SYNC_ERROR,
                    data={
                        "userName": integration.owner.first_name or "User",
                        "integrationName": integration.name,
                        "errorMessage": error_message,
                        "eventType": updated.event_type.value,
                        "retryCount": retry_count,
                        "failedAt": _utcnow().isoformat(),
                        "integrationId": integration.id,
                    },
                )
            )
        return updated

    async def apply_call_status(self, sync_event: SyncEvent, call_event: str) -> SyncEvent:
        """Move a call-triggered sync event forward on a voice platform status webhook.

        ``call_ended`` completes the event; any other status marks it
        processing. Completed and failed events are never moved back.
        """
        if sync_event.status in (SyncStatus.COMPLETED, SyncStatus.FAILED):
            logger.info(
                "sync_event.call_status_ignored",
                sync_event_id=sync_event.id,
                status=sync_event.status.value,
                call_event=call_event,
            )
            return sync_event

        if call_event == CALL_ENDED:
            updated = await self._store.update_sync_event(
                sync_event.id, status=SyncStatus.COMPLETED, processed_at=_utcnow()
            )
            SYNC_EVENTS.labels(status=SyncStatus.COMPLETED.value).inc()
            logger.info("sync_event.call_ended", sync_event_id=sync_event.id, call_id=sync_event.call_id)
            return updated

        return await self._store.update_sync_event(sync_event.id, status=SyncStatus.PROCESSING)

    async def retry_failed(self, sync_event_id: str) -> SyncEvent:
        """Manually re-queue a terminally failed event with a fresh retry budget.

        Raises:
            NotFoundError: No failed sync event with that id.
        """
        event = await self._store.get_sync_event(sync_event_id)
        if event is None or event.status != SyncStatus.FAILED:
            raise NotFoundError("Failed sync event not found")

        updated = await self._store.update_sync_event(
            event.id, status=SyncStatus.PENDING, retry_count=0, error_message=None
        )
        await self.enqueue(updated)
        logger.info("sync_event.requeued", sync_event_id=event.id)
        return updated

    async def _notify(self, message: NotificationMessage) -> None:
        try:
            await self._queue.enqueue(
                QueueName.NOTIFICATION, NOTIFICATION_JOB, message.model_dump(mode="json")
            )
        except Exception as exc:
            logger.error("notification.enqueue_failed", to=message.to, template=message.template.value, error=str(exc))
