"""Pydantic schemas for the webhook-to-CRM pipeline.

Defines:
- Enums: SyncEventType, SyncStatus, Transform, FilterOperator, ActionType,
  CRMObject, NotificationTemplate
- Integration configuration: FieldMapping, TriggerFilter, WorkflowTrigger,
  WorkflowAction, BusinessWorkflow, CRMSchema, CRMAccount,
  NotificationPreferences, CallConfiguration, Integration
- Runtime records: WebhookEvent, SyncEvent, SyncEventFilter, SyncEventPage
- Results: ActionResult, WorkflowResult, NotificationMessage, IntegrationHealth
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook_received"
    CALL_TRIGGERED = "call_triggered"
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"


class SyncStatus(str, Enum):
    """Lifecycle of a sync event.

    pending -> processing -> {completed | failed | retrying};
    retrying -> processing on the next attempt.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class Transform(str, Enum):
    NONE = "none"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    CAPITALIZE = "capitalize"
    TRUNCATE_100 = "truncate_100"
    PHONE_FORMAT = "phone_format"


class FilterOperator(str, Enum):
    """Operators for trigger filters and workflow conditions.

    The three ``indicates_*`` operators are semantic detectors and are only
    meaningful in workflow conditions.
    """

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    INDICATES_SUCCESS = "indicates_success"
    INDICATES_BOOKING = "indicates_booking"
    INDICATES_FAILURE = "indicates_failure"


class ActionType(str, Enum):
    CREATE_PERSON = "create_person"
    UPDATE_PERSON = "update_person"
    CREATE_DEAL = "create_deal"
    UPDATE_DEAL = "update_deal"
    CREATE_ACTIVITY = "create_activity"
    UPDATE_ACTIVITY = "update_activity"


class CRMObject(str, Enum):
    PERSON = "person"
    DEAL = "deal"
    ACTIVITY = "activity"


class NotificationTemplate(str, Enum):
    SYNC_SUCCESS = "sync_success"
    SYNC_ERROR = "sync_error"


# ── Integration Configuration ───────────────────────────────────────────────


class FieldMapping(BaseModel):
    """Declarative rule translating one source path into one target path.

    ``transform`` names a Transform. It is stored as a plain string so that
    a mapping with an unknown transform still loads; the value then passes
    through unchanged.
    """

    source_field: str
    target_field: str
    transform: str | None = None
    required: bool = False


class TriggerFilter(BaseModel):
    """Predicate over a payload path.

    ``operator`` is kept as a plain string so that configurations carrying an
    operator this version does not know still load; the evaluators decide how
    to treat it.
    """

    field: str
    operator: str
    value: Any = None


class WorkflowTrigger(BaseModel):
    event: str


class WorkflowAction(BaseModel):
    """One templated CRM write. Field values may contain ``{{dotted.path}}``."""

    type: str
    crm_object: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class BusinessWorkflow(BaseModel):
    id: str
    name: str
    trigger: WorkflowTrigger
    conditions: list[TriggerFilter] = Field(default_factory=list)
    actions: list[WorkflowAction] = Field(default_factory=list)
    enabled: bool = True


class CRMSchema(BaseModel):
    """Read-only description of the connected CRM account, used for validation."""

    stages: list[dict[str, Any]] = Field(default_factory=list)
    pipelines: list[dict[str, Any]] = Field(default_factory=list)
    deal_fields: list[dict[str, Any]] = Field(default_factory=list)
    person_fields: list[dict[str, Any]] = Field(default_factory=list)
    activity_types: list[dict[str, Any]] = Field(default_factory=list)
    deal_labels: list[dict[str, Any]] = Field(default_factory=list)
    person_labels: list[dict[str, Any]] = Field(default_factory=list)

    def label_keys(self, crm_object: str) -> set[str]:
        labels = {"deal": self.deal_labels, "person": self.person_labels}.get(crm_object, [])
        return {str(label.get("field_key")) for label in labels if label.get("field_key")}


class CRMAccount(BaseModel):
    provider: str
    access_token: str = ""
    account_name: str | None = None
    crm_schema: CRMSchema = Field(default_factory=CRMSchema)


class NotificationPreferences(BaseModel):
    email: str
    first_name: str | None = None
    error_notifications: bool = True
    success_notifications: bool = False


class CallConfiguration(BaseModel):
    """Outbound calling setup; present only when CRM webhooks should place calls."""

    agent_id: str
    from_number: str | None = None
    api_key: str = ""


class Integration(BaseModel):
    """Configuration the pipeline reads but never writes."""

    id: str
    name: str
    is_active: bool = True
    webhook_secret: str = ""
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    trigger_filters: list[TriggerFilter] = Field(default_factory=list)
    business_workflows: list[BusinessWorkflow] = Field(default_factory=list)
    crm_account: CRMAccount
    owner: NotificationPreferences
    config: dict[str, Any] = Field(default_factory=dict)
    call_configuration: CallConfiguration | None = None


# ── Runtime Records ─────────────────────────────────────────────────────────


class WebhookEvent(BaseModel):
    """Audit record of one inbound delivery. Only ``processed`` ever changes."""

    model_config = ConfigDict(frozen=True)

    id: str
    integration_id: str
    provider: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    signature: str | None = None
    processed: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class SyncEvent(BaseModel):
    """The unit of retryable work: one inbound signal that must reach the CRM."""

    id: str
    integration_id: str
    event_type: SyncEventType = SyncEventType.WEBHOOK_RECEIVED
    status: SyncStatus = SyncStatus.PENDING
    source_data: dict[str, Any] = Field(default_factory=dict)
    mapped_data: dict[str, Any] | None = None
    call_id: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime | None = None


class SyncEventFilter(BaseModel):
    integration_id: str | None = None
    status: SyncStatus | None = None
    event_type: SyncEventType | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class SyncEventPage(BaseModel):
    events: list[SyncEvent]
    pagination: Pagination


# ── Results ─────────────────────────────────────────────────────────────────


class ActionResult(BaseModel):
    action: str
    success: bool
    id: Any = None
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class WorkflowResult(BaseModel):
    workflow: str
    actions: list[ActionResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(a.success for a in self.actions)


class NotificationMessage(BaseModel):
    to: str
    subject: str
    template: NotificationTemplate
    data: dict[str, Any] = Field(default_factory=dict)


class IntegrationHealth(BaseModel):
    status: str
    total_events: int
    recent_events: int
    error_rate: int
    average_processing_seconds: int
    last_processed: datetime | None = None
    recommendations: list[str] = Field(default_factory=list)
