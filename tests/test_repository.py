"""Tests for SyncRepository id handling.

The session factory is replaced with an AsyncMock session, no database.

Covers:
- Lookups by an id that is not a UUID return None without a query
- Well-formed ids are passed to the session as UUIDs
- Writes against a malformed id raise NotFoundError
- CRM webhooks for a malformed integration id are still queued
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock

import pytest

from src.callsync.core.errors import NotFoundError
from src.callsync.models import IntegrationModel
from src.callsync.pipeline.calls import CallProcessor
from src.callsync.pipeline.intake import WebhookIntake
from src.callsync.pipeline.workflows import WorkflowEngine
from src.callsync.queue.schemas import QueueName
from src.callsync.repository import SyncRepository


class SessionFactory:
    def __init__(self) -> None:
        self.session = AsyncMock()
        self.session.get.return_value = None
        self.opened = 0

    async def __call__(self):
        self.opened += 1
        yield self.session


@pytest.fixture
def sessions() -> SessionFactory:
    return SessionFactory()


@pytest.fixture
def repository(sessions) -> SyncRepository:
    return SyncRepository(sessions)


class TestMalformedIds:
    @pytest.mark.parametrize("integration_id", ["int-1", "not-a-uuid", ""])
    async def test_integration_lookup_returns_none(self, repository, sessions, integration_id):
        assert await repository.get_integration(integration_id) is None
        assert sessions.opened == 0

    async def test_sync_event_lookup_returns_none(self, repository, sessions):
        assert await repository.get_sync_event("evt-1") is None
        assert sessions.opened == 0

    async def test_call_id_lookup_returns_none(self, repository, sessions):
        assert await repository.find_sync_event_by_call_id("int-1", "call-1") is None
        assert sessions.opened == 0

    async def test_unknown_uuid_queries_session(self, repository, sessions):
        integration_id = uuid.uuid4()

        assert await repository.get_integration(str(integration_id)) is None

        sessions.session.get.assert_awaited_once_with(IntegrationModel, integration_id)

    async def test_write_with_malformed_id_raises(self, repository):
        with pytest.raises(NotFoundError, match="Unknown id"):
            await repository.mark_webhook_processed("wh-1")


class TestIntakeWithRepository:
    async def test_crm_webhook_for_malformed_id_is_queued(
        self, repository, queue, state_machine, processor, registry
    ):
        intake = WebhookIntake(
            store=repository,
            queue=queue,
            state_machine=state_machine,
            processor=processor,
            workflows=WorkflowEngine(registry),
            calls=CallProcessor(registry),
        )

        job = await intake.accept_crm_webhook(
            "int-1", b'{"event": "updated.deal"}', {}, provider_hint="pipedrive"
        )

        assert job.data["integration_id"] == "int-1"
        [(queued, _delay)] = queue.on(QueueName.WEBHOOK)
        assert queued is job
