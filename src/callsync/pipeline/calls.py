"""Record a finished voice call in the CRM.

Contacts are reconciled before anything is created: every equivalent form of
the caller's phone number is searched, then the email address, and a person
is only created when neither matches. Redelivered webhooks therefore reuse
the same contact instead of duplicating it.
"""

from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel

from src.callsync.core.errors import RemoteError
from src.callsync.crm.adapter import CRMAdapter
from src.callsync.crm.registry import CRMRegistry
from src.callsync.pipeline.workflows import deal_placement
from src.callsync.schemas import Integration
from src.callsync.utils.phone import generate_variations
from src.callsync.utils.titles import extract_components, generate_deal_title

logger = structlog.get_logger(__name__)

DEFAULT_DEAL_VALUE = 5000
DEFAULT_DEAL_CURRENCY = "GBP"


class CallOutcome(BaseModel):
    person_id: Any = None
    activity_id: Any = None
    deal_id: Any = None
    created_person: bool = False


def _call_section(payload: dict[str, Any]) -> dict[str, Any]:
    call = payload.get("call")
    return call if isinstance(call, dict) else payload


def _started_at(call: dict[str, Any]) -> datetime:
    timestamp = call.get("start_timestamp")
    if isinstance(timestamp, (int, float)):
        return datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _duration_text(duration_ms: Any) -> str:
    seconds = round((duration_ms or 0) / 1000)
    minutes, rest = divmod(seconds, 60)
    text = f"{minutes} minute{'' if minutes == 1 else 's'}"
    if rest:
        text += f" {rest} seconds"
    return text


def format_transcript(transcript: str | None) -> str:
    if not transcript:
        return "No transcript available"
    lines = []
    for line in transcript.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("Agent:"):
            lines.append(f"<strong>Agent:</strong> {html.escape(line[6:].strip())}")
        elif line.startswith("User:"):
            lines.append(f"<strong>User:</strong> {html.escape(line[5:].strip())}")
        else:
            lines.append(html.escape(line))
    return "<br><br>".join(lines)


def activity_note(call: dict[str, Any], voicemail: bool) -> str:
    """HTML note for the call activity."""
    agent = call.get("agent_name") or call.get("agent_id") or "Unknown Agent"
    parts = [
        "<strong>CALL DETAILS:</strong><br>",
        f"Agent: <strong>{html.escape(str(agent))}</strong><br>",
        f"Duration: {_duration_text(call.get('duration_ms'))}<br>",
    ]
    if voicemail:
        parts.append("Status: <strong>Call not answered</strong><br>")
    if call.get("recording_url"):
        parts.append(f'Recording: <a href="{html.escape(call["recording_url"])}" target="_blank">Download Recording</a><br>')
    if voicemail:
        body = html.escape(call.get("transcript") or "Call went unanswered - see recording for details")
        parts.append(f"<br><strong>CALL DETAILS:</strong><br><br>{body}")
    else:
        parts.append(f"<br><strong>TRANSCRIPT:</strong><br><br>{format_transcript(call.get('transcript'))}")
    return "".join(parts)


def deal_note(summary: str, next_steps: list[str] | None, name: str | None, phone: str | None, when: datetime) -> str:
    if next_steps:
        steps = "<ul>" + "".join(f"<li>{html.escape(str(step))}</li>" for step in next_steps) + "</ul>"
    else:
        steps = "<p><em>No specific next steps recorded</em></p>"
    return (
        "<h4>Call Summary</h4>"
        f"<p><strong>Date:</strong> {when.strftime('%d/%m/%Y %H:%M')} UTC</p>"
        f"<p><strong>Caller:</strong> {html.escape(name or 'Unknown')}</p>"
        f"<p><strong>Phone:</strong> {html.escape(phone or 'Unknown')}</p>"
        "<hr>"
        "<h4>Summary</h4>"
        f"<p>{html.escape(summary)}</p>"
        "<h4>Next Steps</h4>"
        f"{steps}"
    )


async def find_person_by_phone(adapter: CRMAdapter, phone: str | None) -> Any:
    """Search every equivalent form of ``phone``; first match wins."""
    if not phone:
        return None
    for variation in generate_variations(phone):
        try:
            matches = await adapter.search_persons(variation.format, "phone")
        except RemoteError as exc:
            logger.warning("call.phone_search_failed", format=variation.format, error=str(exc))
            continue
        if matches:
            logger.info("call.phone_matched", format=variation.format, description=variation.description)
            return matches[0].get("id")
    return None


async def find_person_by_email(adapter: CRMAdapter, email: str) -> Any:
    try:
        matches = await adapter.search_persons(email, "email")
    except RemoteError as exc:
        logger.warning("call.email_search_failed", error=str(exc))
        return None
    return matches[0].get("id") if matches else None


class CallProcessor:
    """Writes a contact, a call activity and (for successful calls) a deal.

    Args:
        registry: Resolves the integration's CRM account to an adapter.
    """

    def __init__(self, registry: CRMRegistry) -> None:
        self._registry = registry

    async def process(self, integration: Integration, payload: dict[str, Any]) -> CallOutcome:
        adapter = self._registry.adapter_for(integration.crm_account)
        call = _call_section(payload)
        analysis = call.get("call_analysis") or {}
        variables = call.get("retell_llm_dynamic_variables") or {}

        inbound = not call.get("direction") or call.get("direction") == "inbound"
        contact_phone = call.get("from_number") if inbound else call.get("to_number")
        components = extract_components(call)

        name = components.name or variables.get("name") or ("Inbound Caller" if inbound else "Outbound Contact")
        phone = variables.get("phone") or contact_phone
        email = variables.get("email")

        outcome = CallOutcome()
        outcome.person_id = await find_person_by_phone(adapter, phone)
        if outcome.person_id is None and email:
            outcome.person_id = await find_person_by_email(adapter, email)
        if outcome.person_id is None:
            person_data: dict[str, Any] = {"name": name}
            if phone:
                person_data["phone"] = [{"value": phone, "primary": True}]
            if email:
                person_data["email"] = [{"value": email, "primary": True}]
            person = await adapter.create_person(person_data)
            outcome.person_id = person.get("id")
            outcome.created_person = True
            logger.info("call.person_created", person_id=outcome.person_id)
        else:
            logger.info("call.person_matched", person_id=outcome.person_id)

        started = _started_at(call)
        voicemail = analysis.get("in_voicemail") is True
        direction = "Inbound" if inbound else "Outbound"
        activity = await adapter.create_activity(
            {
                "person_id": outcome.person_id,
                "subject": f"{direction} Call: {'Unanswered' if voicemail else 'Answered'}",
                "note": activity_note(call, voicemail),
                "type": "call",
                "due_date": started.strftime("%Y-%m-%d"),
                "due_time": started.strftime("%H:%M"),
                "done": True,
            }
        )
        outcome.activity_id = activity.get("id")

        if analysis.get("call_successful") is True:
            deal = await adapter.create_deal(
                {
                    "person_id": outcome.person_id,
                    "title": generate_deal_title(call),
                    "value": DEFAULT_DEAL_VALUE,
                    "currency": DEFAULT_DEAL_CURRENCY,
                    "status": "open",
                    **deal_placement(integration.config),
                }
            )
            outcome.deal_id = deal.get("id")
            if outcome.deal_id and analysis.get("call_summary"):
                await self._add_deal_note(
                    adapter,
                    outcome.deal_id,
                    deal_note(
                        analysis["call_summary"],
                        analysis.get("next_steps"),
                        components.name,
                        contact_phone,
                        started,
                    ),
                )
        else:
            logger.info("call.deal_skipped", call_id=call.get("call_id"))

        logger.info(
            "call.processed",
            call_id=call.get("call_id"),
            person_id=outcome.person_id,
            activity_id=outcome.activity_id,
            deal_id=outcome.deal_id,
        )
        return outcome

    async def _add_deal_note(self, adapter: CRMAdapter, deal_id: Any, content: str) -> None:
        try:
            await adapter.add_note(deal_id, content)
        except RemoteError as exc:
            logger.error("call.deal_note_failed", deal_id=deal_id, error=str(exc))
