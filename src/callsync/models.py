"""Persistence models for integrations, webhook deliveries and sync events.

- IntegrationModel: integration configuration (read-only to the pipeline;
  maintained by the dashboard that owns it)
- WebhookEventModel: audit record of every accepted inbound delivery
- SyncEventModel: lifecycle record of one retryable unit of CRM work
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.callsync.core.database import Base


class IntegrationModel(Base):
    """One CRM <-> voice platform integration and everything needed to run it.

    Mapping rules, trigger filters, workflows, the CRM account and owner
    notification preferences are stored as JSON documents and validated into
    the Integration schema on read.
    """

    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"))
    webhook_secret: Mapped[str] = mapped_column(String(200), default="", server_default="")
    field_mappings: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    trigger_filters: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    business_workflows: Mapped[list] = mapped_column(JSON, default=list, server_default=text("'[]'::json"))
    crm_account: Mapped[dict] = mapped_column(JSON, nullable=False)
    owner: Mapped[dict] = mapped_column(JSON, nullable=False)
    config: Mapped[dict] = mapped_column(JSON, default=dict, server_default=text("'{}'::json"))
    call_configuration: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )


class WebhookEventModel(Base):
    """Inbound delivery as received. Only ``processed`` is ever updated."""

    __tablename__ = "webhook_events"
    __table_args__ = (Index("ix_webhook_events_integration_created", "integration_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SyncEventModel(Base):
    """One inbound signal that must reach the CRM, with its retry bookkeeping."""

    __tablename__ = "sync_events"
    __table_args__ = (
        Index("ix_sync_events_integration_created", "integration_id", "created_at"),
        Index("ix_sync_events_call_id", "integration_id", "call_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("integrations.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    source_data: Mapped[dict] = mapped_column(JSON, default=dict)
    mapped_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    call_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    max_retries: Mapped[int] = mapped_column(Integer, default=3, server_default=text("3"))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )
