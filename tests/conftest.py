"""Shared fixtures for the pipeline tests.

Provides:
- InMemorySyncStore: SyncEventStore test double (no database)
- FakeCRM: CRMAdapter that records every call and hands out ids
- RecordingQueue: JobQueue stand-in that keeps enqueued jobs in a list
- Integration factory, CRM registry and wired pipeline components
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.callsync.config import Settings
from src.callsync.core.errors import NotFoundError, RemoteError
from src.callsync.crm.adapter import CRMAdapter
from src.callsync.crm.registry import CRMRegistry
from src.callsync.pipeline.calls import CallProcessor
from src.callsync.pipeline.intake import WebhookIntake
from src.callsync.pipeline.state_machine import SyncProcessor, SyncStateMachine
from src.callsync.pipeline.webhook_urls import WebhookUrlConfig
from src.callsync.pipeline.workflows import WorkflowEngine
from src.callsync.queue.schemas import QUEUE_ATTEMPTS, Job, JobPriority, QueueName
from src.callsync.schemas import (
    CRMAccount,
    Integration,
    NotificationPreferences,
    Pagination,
    SyncEvent,
    SyncEventFilter,
    SyncEventPage,
    SyncEventType,
    SyncStatus,
    WebhookEvent,
)


# ── In-Memory Test Doubles ───────────────────────────────────────────────────


class InMemorySyncStore:
    """In-memory SyncEventStore for testing without a database."""

    def __init__(self) -> None:
        self.integrations: dict[str, Integration] = {}
        self.webhook_events: dict[str, WebhookEvent] = {}
        self.sync_events: dict[str, SyncEvent] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []

    def add_integration(self, integration: Integration) -> Integration:
        self.integrations[integration.id] = integration
        return integration

    def add_sync_event(self, event: SyncEvent) -> SyncEvent:
        self.sync_events[event.id] = event
        return event

    async def get_integration(self, integration_id: str) -> Integration | None:
        return self.integrations.get(integration_id)

    async def create_webhook_event(
        self,
        integration_id: str,
        provider: str,
        event_type: str,
        payload: dict[str, Any],
        signature: str | None = None,
        processed: bool = False,
    ) -> WebhookEvent:
        event = WebhookEvent(
            id=str(uuid.uuid4()),
            integration_id=integration_id,
            provider=provider,
            event_type=event_type,
            payload=payload,
            signature=signature,
            processed=processed,
        )
        self.webhook_events[event.id] = event
        return event

    async def mark_webhook_processed(self, webhook_event_id: str) -> None:
        event = self.webhook_events[webhook_event_id]
        self.webhook_events[webhook_event_id] = event.model_copy(update={"processed": True})

    async def list_webhook_events(
        self, integration_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[WebhookEvent], int]:
        events = sorted(
            (e for e in self.webhook_events.values() if e.integration_id == integration_id),
            key=lambda e: e.created_at,
            reverse=True,
        )
        start = (page - 1) * limit
        return events[start : start + limit], len(events)

    async def create_sync_event(
        self,
        integration_id: str,
        event_type: SyncEventType,
        source_data: dict[str, Any],
        max_retries: int,
        call_id: str | None = None,
    ) -> SyncEvent:
        event = SyncEvent(
            id=str(uuid.uuid4()),
            integration_id=integration_id,
            event_type=event_type,
            source_data=source_data,
            max_retries=max_retries,
            call_id=call_id,
        )
        self.sync_events[event.id] = event
        return event

    async def get_sync_event(self, sync_event_id: str) -> SyncEvent | None:
        return self.sync_events.get(sync_event_id)

    async def update_sync_event(self, sync_event_id: str, **changes: Any) -> SyncEvent:
        event = self.sync_events.get(sync_event_id)
        if event is None:
            raise NotFoundError(f"Sync event {sync_event_id} not found")
        self.updates.append((sync_event_id, dict(changes)))
        updated = event.model_copy(update={**changes, "updated_at": datetime.now(timezone.utc)})
        self.sync_events[sync_event_id] = updated
        return updated

    async def find_sync_event_by_call_id(self, integration_id: str, call_id: str) -> SyncEvent | None:
        for event in self.sync_events.values():
            if event.integration_id == integration_id and event.call_id == call_id:
                return event
        return None

    async def list_sync_events(self, filters: SyncEventFilter) -> SyncEventPage:
        events = [
            e
            for e in self.sync_events.values()
            if (filters.integration_id is None or e.integration_id == filters.integration_id)
            and (filters.status is None or e.status == filters.status)
            and (filters.event_type is None or e.event_type == filters.event_type)
            and (filters.start_date is None or e.created_at >= filters.start_date)
            and (filters.end_date is None or e.created_at <= filters.end_date)
        ]
        events.sort(key=lambda e: e.created_at, reverse=True)
        start = (filters.page - 1) * filters.limit
        return SyncEventPage(
            events=events[start : start + filters.limit],
            pagination=Pagination(
                page=filters.page,
                limit=filters.limit,
                total=len(events),
                total_pages=math.ceil(len(events) / filters.limit),
            ),
        )

    async def sync_events_since(
        self, integration_id: str, since: datetime, limit: int | None = None
    ) -> list[SyncEvent]:
        events = sorted(
            (e for e in self.sync_events.values() if e.integration_id == integration_id and e.created_at >= since),
            key=lambda e: e.created_at,
            reverse=True,
        )
        return events[:limit] if limit else events

    async def count_sync_events(self, integration_id: str) -> int:
        return sum(1 for e in self.sync_events.values() if e.integration_id == integration_id)


class FakeCRM(CRMAdapter):
    """CRMAdapter that records calls and returns records with sequential ids.

    ``search_results`` maps ``(field, term)`` to the persons a search returns.
    Method names in ``failing`` raise RemoteError.
    """

    provider = "pipedrive"

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.search_results: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.failing: set[str] = set()
        self._next_id = 100

    def _record(self, method: str, payload: Any) -> dict[str, Any]:
        self.calls.append((method, payload))
        if method in self.failing:
            raise RemoteError(f"{method} failed", provider=self.provider)
        self._next_id += 1
        return {"id": self._next_id, **(payload if isinstance(payload, dict) else {})}

    def called(self, method: str) -> list[Any]:
        return [payload for name, payload in self.calls if name == method]

    async def create_person(self, data):
        return self._record("create_person", data)

    async def update_person(self, person_id, data):
        self._record("update_person", {"person_id": person_id, **data})
        return {"id": person_id, **data}

    async def create_deal(self, data):
        return self._record("create_deal", data)

    async def update_deal(self, deal_id, data):
        self._record("update_deal", {"deal_id": deal_id, **data})
        return {"id": deal_id, **data}

    async def create_activity(self, data):
        return self._record("create_activity", data)

    async def update_activity(self, activity_id, data):
        self._record("update_activity", {"activity_id": activity_id, **data})
        return {"id": activity_id, **data}

    async def get_deals(self, filters=None):
        return []

    async def get_persons(self, filters=None):
        return []

    async def get_activities(self, filters=None):
        return []

    async def search_persons(self, term, field):
        self.calls.append(("search_persons", {"term": term, "field": field}))
        if "search_persons" in self.failing:
            raise RemoteError("search failed", provider=self.provider)
        return self.search_results.get((field, term), [])

    async def add_note(self, deal_id, content):
        return self._record("add_note", {"deal_id": deal_id, "content": content})


class RecordingQueue:
    """JobQueue stand-in: enqueue() builds the same Job and keeps it."""

    def __init__(self) -> None:
        self.jobs: list[tuple[Job, int]] = []

    async def enqueue(
        self,
        queue: QueueName,
        name: str,
        data: dict[str, Any],
        priority: JobPriority = JobPriority.NORMAL,
        delay_ms: int = 0,
        dedupe_key: str | None = None,
    ) -> Job:
        job = Job(
            queue=queue,
            name=name,
            data=data,
            priority=priority,
            max_attempts=QUEUE_ATTEMPTS[queue],
            dedupe_key=dedupe_key,
        )
        self.jobs.append((job, delay_ms))
        return job

    def on(self, queue: QueueName) -> list[tuple[Job, int]]:
        return [(job, delay) for job, delay in self.jobs if job.queue == queue]


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def make_integration():
    """Factory for Integration configs with sensible defaults."""

    def _make(**overrides: Any) -> Integration:
        defaults: dict[str, Any] = {
            "id": "int-1",
            "name": "Acme Voice",
            "webhook_secret": "s3cret",
            "crm_account": CRMAccount(provider="pipedrive", access_token="token"),
            "owner": NotificationPreferences(email="owner@example.com", first_name="Dana"),
        }
        defaults.update(overrides)
        return Integration.model_validate(defaults)

    return _make


@pytest.fixture
def make_sync_event():
    def _make(**overrides: Any) -> SyncEvent:
        defaults: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "integration_id": "int-1",
            "source_data": {"name": "Jane"},
            "created_at": datetime.now(timezone.utc) - timedelta(minutes=5),
        }
        defaults.update(overrides)
        return SyncEvent(**defaults)

    return _make


@pytest.fixture
def store() -> InMemorySyncStore:
    return InMemorySyncStore()


@pytest.fixture
def crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def registry(crm) -> CRMRegistry:
    return CRMRegistry({"pipedrive": lambda account: crm})


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def settings() -> Settings:
    return Settings(SYNC_MAX_RETRIES=3, SYNC_BACKOFF_BASE_MS=1000, SYNC_BACKOFF_CAP_MS=300_000)


@pytest.fixture
def webhook_urls() -> WebhookUrlConfig:
    return WebhookUrlConfig("https://hooks.example.com")


@pytest.fixture
def call_client() -> AsyncMock:
    client = AsyncMock()
    client.create_call.return_value = {"call_id": "call-123"}
    return client


@pytest.fixture
def processor(registry, webhook_urls, call_client) -> SyncProcessor:
    return SyncProcessor(registry, webhook_urls, call_client_factory=lambda cfg: call_client)


@pytest.fixture
def state_machine(store, queue, processor, settings) -> SyncStateMachine:
    return SyncStateMachine(store, queue, processor, settings)


@pytest.fixture
def intake(store, queue, state_machine, processor, registry) -> WebhookIntake:
    return WebhookIntake(
        store=store,
        queue=queue,
        state_machine=state_machine,
        processor=processor,
        workflows=WorkflowEngine(registry),
        calls=CallProcessor(registry),
    )
