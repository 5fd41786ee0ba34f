"""Workflow execution engine -- ordered, templated CRM action chains.

A BusinessWorkflow runs when its trigger event matches and its conditions
pass. Its actions run strictly in order; each action's field values are
rendered against the event payload plus the results of the actions before
it (``previous_action_result``, ``action_<i>_result``) and the integration
config (``crm_config``). The first failing action is recorded and ends that
workflow; earlier writes stay in place. Workflows never affect each other.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog

from src.callsync.core.errors import ConfigurationError, ValidationError
from src.callsync.core.monitoring import WORKFLOW_ACTIONS
from src.callsync.crm.adapter import CRMAdapter
from src.callsync.crm.registry import CRMRegistry
from src.callsync.pipeline.filters import evaluate_conditions
from src.callsync.pipeline.templates import render_fields
from src.callsync.schemas import (
    ActionResult,
    ActionType,
    BusinessWorkflow,
    FilterOperator,
    Integration,
    TriggerFilter,
    WorkflowAction,
    WorkflowResult,
    WorkflowTrigger,
)

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[CRMAdapter, dict[str, Any], Integration], Awaitable[ActionResult]]


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("workflow.invalid_config_id", value=value)
        return None


def _config_value(config: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if config.get(key) not in (None, ""):
            return config[key]
    return None


def deal_placement(config: dict[str, Any]) -> dict[str, int]:
    """Pipeline and stage ids configured for new deals, when set and numeric."""
    placement = {}
    for target, keys in (
        ("pipeline_id", ("selected_pipeline_id", "selectedPipelineId")),
        ("stage_id", ("selected_stage_id", "selectedStageId")),
    ):
        raw = _config_value(config, *keys)
        value = _as_int(raw) if raw is not None else None
        if value is not None:
            placement[target] = value
    return placement


def consultation_booking_template() -> BusinessWorkflow:
    """Pre-built workflow: person, deal, call activity, then move the deal on."""
    return BusinessWorkflow(
        id="consultation_booking",
        name="Consultation Booking",
        trigger=WorkflowTrigger(event="call_analyzed"),
        conditions=[
            TriggerFilter(field="any_field", operator=FilterOperator.INDICATES_BOOKING.value, value=True),
        ],
        actions=[
            WorkflowAction(
                type=ActionType.CREATE_PERSON.value,
                crm_object="person",
                fields={
                    "name": "{{call.call_analysis.custom_analysis_data.customer_name}}",
                    "phone": "{{call.call_analysis.custom_analysis_data.customer_phone}}",
                    "email": "{{call.call_analysis.custom_analysis_data.customer_email}}",
                },
            ),
            WorkflowAction(
                type=ActionType.CREATE_DEAL.value,
                crm_object="deal",
                fields={
                    "title": "Consultation Call",
                    "person_id": "{{previous_action_result.id}}",
                    "value": "{{call.call_analysis.custom_analysis_data.deal_value}}",
                    "status": "open",
                },
            ),
            WorkflowAction(
                type=ActionType.CREATE_ACTIVITY.value,
                crm_object="activity",
                fields={
                    "subject": "Consultation Call",
                    "type": "call",
                    "deal_id": "{{previous_action_result.id}}",
                    "person_id": "{{action_0_result.id}}",
                    "note": "{{call.call_analysis.call_summary}}",
                    "done": True,
                },
            ),
            WorkflowAction(
                type=ActionType.UPDATE_DEAL.value,
                crm_object="deal",
                fields={
                    "deal_id": "{{action_1_result.id}}",
                    "stage_id": "{{crm_config.meeting_scheduled_stage_id}}",
                },
            ),
        ],
        enabled=True,
    )


class WorkflowEngine:
    """Runs an integration's business workflows against the CRM capability interface.

    Args:
        registry: Resolves the integration's CRM account to an adapter.
    """

    def __init__(self, registry: CRMRegistry) -> None:
        self._registry = registry
        self._handlers: dict[str, ActionHandler] = {
            ActionType.CREATE_PERSON.value: self._create_person,
            ActionType.UPDATE_PERSON.value: self._update_person,
            ActionType.CREATE_DEAL.value: self._create_deal,
            ActionType.UPDATE_DEAL.value: self._update_deal,
            ActionType.CREATE_ACTIVITY.value: self._create_activity,
            ActionType.UPDATE_ACTIVITY.value: self._update_activity,
        }

    def matching_workflows(
        self, integration: Integration, event_type: str, payload: dict[str, Any]
    ) -> list[BusinessWorkflow]:
        return [
            wf
            for wf in integration.business_workflows
            if wf.enabled
            and wf.actions
            and wf.trigger.event == event_type
            and evaluate_conditions(wf.conditions, payload)
        ]

    async def execute_workflows(
        self, integration: Integration, event_type: str, payload: dict[str, Any]
    ) -> list[WorkflowResult]:
        """Run every matching workflow, each independently of the others.

        Returns:
            One WorkflowResult per workflow that ran. Disabled, empty and
            non-matching workflows do not appear.
        """
        workflows = self.matching_workflows(integration, event_type, payload)
        if not workflows:
            logger.info(
                "workflow.none_matched",
                integration_id=integration.id,
                event_type=event_type,
            )
            return []

        results = []
        for workflow in workflows:
            logger.info("workflow.started", workflow=workflow.name, integration_id=integration.id)
            results.append(await self.execute_workflow(workflow, integration, payload))
        return results

    async def execute_workflow(
        self, workflow: BusinessWorkflow, integration: Integration, payload: dict[str, Any]
    ) -> WorkflowResult:
        result = WorkflowResult(workflow=workflow.name)

        for index, action in enumerate(workflow.actions):
            context = self._context(payload, result.actions, integration)
            try:
                adapter = self._registry.adapter_for(integration.crm_account)
                outcome = await self.execute_action(adapter, action, context, integration)
            except Exception as exc:
                logger.error(
                    "workflow.action_failed",
                    workflow=workflow.name,
                    action=action.type,
                    index=index,
                    error=str(exc),
                )
                WORKFLOW_ACTIONS.labels(action=action.type, outcome="failure").inc()
                result.actions.append(ActionResult(action=action.type, success=False, error=str(exc)))
                break

            WORKFLOW_ACTIONS.labels(action=action.type, outcome="success").inc()
            result.actions.append(outcome)

        logger.info(
            "workflow.finished",
            workflow=workflow.name,
            actions=len(result.actions),
            succeeded=result.succeeded,
        )
        return result

    async def execute_action(
        self,
        adapter: CRMAdapter,
        action: WorkflowAction,
        context: dict[str, Any],
        integration: Integration,
    ) -> ActionResult:
        handler = self._handlers.get(action.type)
        if handler is None:
            raise ConfigurationError(f"Unknown action type: {action.type}")
        fields = render_fields(action.fields, context)
        return await handler(adapter, fields, integration)

    @staticmethod
    def _context(
        payload: dict[str, Any], previous: list[ActionResult], integration: Integration
    ) -> dict[str, Any]:
        context = dict(payload)
        context["previous_action_result"] = previous[-1].data if previous else {}
        for i, prior in enumerate(previous):
            context[f"action_{i}_result"] = prior.data
        context["crm_config"] = integration.config
        return context

    # ── Action Handlers ─────────────────────────────────────────────────────

    async def _create_person(
        self, adapter: CRMAdapter, fields: dict[str, Any], integration: Integration
    ) -> ActionResult:
        data = _compact(
            {
                "name": fields.get("name"),
                "phone": [{"value": fields["phone"], "primary": True}] if fields.get("phone") else None,
                "email": [{"value": fields["email"], "primary": True}] if fields.get("email") else None,
                "owner_id": fields.get("owner_id"),
            }
        )
        record = await adapter.create_person(data)
        return ActionResult(action=ActionType.CREATE_PERSON.value, success=True, id=record.get("id"), data=record)

    async def _update_person(
        self, adapter: CRMAdapter, fields: dict[str, Any], integration: Integration
    ) -> ActionResult:
        person_id = fields.get("person_id")
        if not person_id:
            raise ValidationError("Person ID not provided")
        data = _compact({k: fields.get(k) for k in ("name", "phone", "email")})
        record = await adapter.update_person(person_id, data)
        return ActionResult(action=ActionType.UPDATE_PERSON.value, success=True, id=person_id, data=record)

    async def _create_deal(
        self, adapter: CRMAdapter, fields: dict[str, Any], integration: Integration
    ) -> ActionResult:
        data: dict[str, Any] = {
            "title": fields.get("title") or "Call Follow-up Deal",
            "person_id": fields.get("person_id"),
            "value": fields.get("value"),
            "currency": fields.get("currency") or "USD",
            "status": fields.get("status") or "open",
        }

        data.update(deal_placement(integration.config))
        record = await adapter.create_deal(_compact(data))
        return ActionResult(action=ActionType.CREATE_DEAL.value, success=True, id=record.get("id"), data=record)

    async def _update_deal(
        self, adapter: CRMAdapter, fields: dict[str, Any], integration: Integration
    ) -> ActionResult:
        deal_id = fields.get("deal_id") or fields.get("id")
        if not deal_id:
            raise ValidationError("Deal ID not provided")
        data = {k: fields[k] for k in ("stage_id", "title", "value", "status") if fields.get(k)}
        record = await adapter.update_deal(deal_id, data)
        return ActionResult(action=ActionType.UPDATE_DEAL.value, success=True, id=deal_id, data=record)

    async def _create_activity(
        self, adapter: CRMAdapter, fields: dict[str, Any], integration: Integration
    ) -> ActionResult:
        data = _compact(
            {
                "subject": fields.get("subject") or "Call Activity",
                "type": fields.get("type") or "call",
                "note": fields.get("note"),
                "person_id": fields.get("person_id"),
                "deal_id": fields.get("deal_id"),
                "due_date": fields.get("due_date"),
                "due_time": fields.get("due_time"),
                "done": fields["done"] if fields.get("done") is not None else True,
            }
        )
        record = await adapter.create_activity(data)
        return ActionResult(action=ActionType.CREATE_ACTIVITY.value, success=True, id=record.get("id"), data=record)

    async def _update_activity(
        self, adapter: CRMAdapter, fields: dict[str, Any], integration: Integration
    ) -> ActionResult:
        activity_id = fields.get("activity_id") or fields.get("id")
        if not activity_id:
            raise ValidationError("Activity ID not provided")
        data = _compact({k: v for k, v in fields.items() if k not in ("activity_id", "id")})
        record = await adapter.update_activity(activity_id, data)
        return ActionResult(action=ActionType.UPDATE_ACTIVITY.value, success=True, id=activity_id, data=record)
