"""Event-to-CRM pipeline.

Webhook intake feeds sync events through the state machine; the field
mapping engine, workflow engine and call processor perform the CRM writes.

Exports:
    WebhookIntake: Signature checks, classification, queue hand-off.
    SyncStateMachine: Sync event lifecycle with retry and notifications.
    SyncProcessor: One sync attempt, dispatched by event type.
    FieldMappingEngine: Source payload to CRM payload transformer.
    WorkflowEngine: Ordered, templated CRM action chains.
    CallProcessor: Contact reconciliation and call logging.
    WebhookUrlConfig: Base URL for provider-facing webhook URLs.
"""

from __future__ import annotations

from src.callsync.pipeline.calls import CallProcessor
from src.callsync.pipeline.field_mapping import FieldMappingEngine
from src.callsync.pipeline.intake import WebhookIntake
from src.callsync.pipeline.state_machine import SyncProcessor, SyncStateMachine
from src.callsync.pipeline.webhook_urls import WebhookUrlConfig
from src.callsync.pipeline.workflows import WorkflowEngine

__all__ = [
    "CallProcessor",
    "FieldMappingEngine",
    "SyncProcessor",
    "SyncStateMachine",
    "WebhookIntake",
    "WebhookUrlConfig",
    "WorkflowEngine",
]
