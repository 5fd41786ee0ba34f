"""Sync persistence -- the store the pipeline reads integrations from and
records webhook deliveries and sync event state into.

SyncEventStore is the protocol the intake layer and the state machine depend
on. SyncRepository implements it over async SQLAlchemy with the
session_factory callable pattern; tests substitute an in-memory store.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.callsync.core.errors import NotFoundError
from src.callsync.models import IntegrationModel, SyncEventModel, WebhookEventModel
from src.callsync.schemas import (
    Integration,
    Pagination,
    SyncEvent,
    SyncEventFilter,
    SyncEventPage,
    SyncEventType,
    SyncStatus,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)


class SyncEventStore(Protocol):
    async def get_integration(self, integration_id: str) -> Integration | None: ...

    async def create_webhook_event(
        self,
        integration_id: str,
        provider: str,
        event_type: str,
        payload: dict[str, Any],
        signature: str | None = None,
        processed: bool = False,
    ) -> WebhookEvent: ...

    async def mark_webhook_processed(self, webhook_event_id: str) -> None: ...

    async def list_webhook_events(
        self, integration_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[WebhookEvent], int]: ...

    async def create_sync_event(
        self,
        integration_id: str,
        event_type: SyncEventType,
        source_data: dict[str, Any],
        max_retries: int,
        call_id: str | None = None,
    ) -> SyncEvent: ...

    async def get_sync_event(self, sync_event_id: str) -> SyncEvent | None: ...

    async def update_sync_event(self, sync_event_id: str, **changes: Any) -> SyncEvent: ...

    async def find_sync_event_by_call_id(
        self, integration_id: str, call_id: str
    ) -> SyncEvent | None: ...

    async def list_sync_events(self, filters: SyncEventFilter) -> SyncEventPage: ...

    async def sync_events_since(
        self, integration_id: str, since: datetime, limit: int | None = None
    ) -> list[SyncEvent]: ...

    async def count_sync_events(self, integration_id: str) -> int: ...


# ── Serialization Helpers ───────────────────────────────────────────────────


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _uuid(value: str) -> uuid.UUID:
    parsed = _parse_uuid(value)
    if parsed is None:
        raise NotFoundError(f"Unknown id: {value}")
    return parsed



def _model_to_integration(model: IntegrationModel) -> Integration:
    return Integration.model_validate(
        {
            "id": str(model.id),
            "name": model.name,
            "is_active": model.is_active,
            "webhook_secret": model.webhook_secret or "",
            "field_mappings": model.field_mappings or [],
            "trigger_filters": model.trigger_filters or [],
            "business_workflows": model.business_workflows or [],
            "crm_account": model.crm_account,
            "owner": model.owner,
            "config": model.config or {},
            "call_configuration": model.call_configuration,
        }
    )


def _model_to_webhook_event(model: WebhookEventModel) -> WebhookEvent:
    return WebhookEvent(
        id=str(model.id),
        integration_id=str(model.integration_id),
        provider=model.provider,
        event_type=model.event_type,
        payload=model.payload or {},
        signature=model.signature,
        processed=model.processed,
        created_at=model.created_at,
    )


def _model_to_sync_event(model: SyncEventModel) -> SyncEvent:
    return SyncEvent(
        id=str(model.id),
        integration_id=str(model.integration_id),
        event_type=SyncEventType(model.event_type),
        status=SyncStatus(model.status),
        source_data=model.source_data or {},
        mapped_data=model.mapped_data,
        call_id=model.call_id,
        error_message=model.error_message,
        retry_count=model.retry_count or 0,
        max_retries=model.max_retries,
        processed_at=model.processed_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, (SyncStatus, SyncEventType)):
        return value.value
    return value


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Async SQLAlchemy implementation of SyncEventStore.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Integrations ────────────────────────────────────────────────────────

    async def get_integration(self, integration_id: str) -> Integration | None:
        """None for unknown ids, including ids that are not UUIDs."""
        key = _parse_uuid(integration_id)
        if key is None:
            return None
        async for session in self._session_factory():
            model = await session.get(IntegrationModel, key)
            if model is None:
                return None
            return _model_to_integration(model)

    # ── Webhook Events ──────────────────────────────────────────────────────

    async def create_webhook_event(
        self,
        integration_id: str,
        provider: str,
        event_type: str,
        payload: dict[str, Any],
        signature: str | None = None,
        processed: bool = False,
    ) -> WebhookEvent:
        async for session in self._session_factory():
            model = WebhookEventModel(
                integration_id=_uuid(integration_id),
                provider=provider,
                event_type=event_type,
                payload=payload,
                signature=signature,
                processed=processed,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_webhook_event(model)

    async def mark_webhook_processed(self, webhook_event_id: str) -> None:
        async for session in self._session_factory():
            model = await session.get(WebhookEventModel, _uuid(webhook_event_id))
            if model is None:
                raise NotFoundError(f"Webhook event {webhook_event_id} not found")
            model.processed = True
            await session.commit()

    async def list_webhook_events(
        self, integration_id: str, page: int = 1, limit: int = 50
    ) -> tuple[list[WebhookEvent], int]:
        async for session in self._session_factory():
            where = WebhookEventModel.integration_id == _uuid(integration_id)
            total = await session.scalar(select(func.count()).select_from(WebhookEventModel).where(where))
            stmt = (
                select(WebhookEventModel)
                .where(where)
                .order_by(WebhookEventModel.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_webhook_event(m) for m in result.scalars().all()], total or 0

    # ── Sync Events ─────────────────────────────────────────────────────────

    async def create_sync_event(
        self,
        integration_id: str,
        event_type: SyncEventType,
        source_data: dict[str, Any],
        max_retries: int,
        call_id: str | None = None,
    ) -> SyncEvent:
        async for session in self._session_factory():
            model = SyncEventModel(
                integration_id=_uuid(integration_id),
                event_type=_column_value(event_type),
                status=SyncStatus.PENDING.value,
                source_data=source_data,
                call_id=call_id,
                retry_count=0,
                max_retries=max_retries,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("sync_event.created", sync_event_id=str(model.id), event_type=model.event_type)
            return _model_to_sync_event(model)

    async def get_sync_event(self, sync_event_id: str) -> SyncEvent | None:
        key = _parse_uuid(sync_event_id)
        if key is None:
            return None
        async for session in self._session_factory():
            model = await session.get(SyncEventModel, key)
            if model is None:
                return None
            return _model_to_sync_event(model)

    async def update_sync_event(self, sync_event_id: str, **changes: Any) -> SyncEvent:
        """Apply ``changes`` in one committed write and return the new state."""
        async for session in self._session_factory():
            model = await session.get(SyncEventModel, _uuid(sync_event_id))
            if model is None:
                raise NotFoundError(f"Sync event {sync_event_id} not found")
            for key, value in changes.items():
                setattr(model, key, _column_value(value))
            await session.commit()
            await session.refresh(model)
            return _model_to_sync_event(model)

    async def find_sync_event_by_call_id(
        self, integration_id: str, call_id: str
    ) -> SyncEvent | None:
        key = _parse_uuid(integration_id)
        if key is None:
            return None
        async for session in self._session_factory():
            stmt = (
                select(SyncEventModel)
                .where(
                    SyncEventModel.integration_id == key,
                    SyncEventModel.call_id == call_id,
                )
                .order_by(SyncEventModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_sync_event(model) if model else None

    async def list_sync_events(self, filters: SyncEventFilter) -> SyncEventPage:
        async for session in self._session_factory():
            conditions = []
            if filters.integration_id:
                conditions.append(SyncEventModel.integration_id == _uuid(filters.integration_id))
            if filters.status:
                conditions.append(SyncEventModel.status == filters.status.value)
            if filters.event_type:
                conditions.append(SyncEventModel.event_type == filters.event_type.value)
            if filters.start_date:
                conditions.append(SyncEventModel.created_at >= filters.start_date)
            if filters.end_date:
                conditions.append(SyncEventModel.created_at <= filters.end_date)

            total = await session.scalar(
                select(func.count()).select_from(SyncEventModel).where(*conditions)
            )
            stmt = (
                select(SyncEventModel)
                .where(*conditions)
                .order_by(SyncEventModel.created_at.desc())
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            )
            result = await session.execute(stmt)
            total = total or 0
            return SyncEventPage(
                events=[_model_to_sync_event(m) for m in result.scalars().all()],
                pagination=Pagination(
                    page=filters.page,
                    limit=filters.limit,
                    total=total,
                    total_pages=math.ceil(total / filters.limit),
                ),
            )

    async def sync_events_since(
        self, integration_id: str, since: datetime, limit: int | None = None
    ) -> list[SyncEvent]:
        async for session in self._session_factory():
            stmt = (
                select(SyncEventModel)
                .where(
                    SyncEventModel.integration_id == _uuid(integration_id),
                    SyncEventModel.created_at >= since,
                )
                .order_by(SyncEventModel.created_at.desc())
            )
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return [_model_to_sync_event(m) for m in result.scalars().all()]

    async def count_sync_events(self, integration_id: str) -> int:
        async for session in self._session_factory():
            total = await session.scalar(
                select(func.count())
                .select_from(SyncEventModel)
                .where(SyncEventModel.integration_id == _uuid(integration_id))
            )
            return total or 0
