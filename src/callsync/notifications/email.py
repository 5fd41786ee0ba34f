"""Sync notification emails sent through Resend.

Messages are rendered from the ``sync_success`` / ``sync_error`` templates.
The Resend client is blocking, so sends run inside asyncio.to_thread().
"""

from __future__ import annotations

import asyncio
import html
from typing import Any

import resend
import structlog

from src.callsync.config import Settings, get_settings
from src.callsync.core.errors import RemoteError
from src.callsync.schemas import NotificationMessage, NotificationTemplate

logger = structlog.get_logger(__name__)


def _value(data: dict[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    return html.escape(str(value)) if value not in (None, "") else default


def render_success(data: dict[str, Any]) -> str:
    call_row = (
        f"<li><strong>Call ID:</strong> {_value(data, 'callId')}</li>" if data.get("callId") else ""
    )
    return (
        "<html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        "<h2 style=\"color: #16a34a;\">Sync completed</h2>"
        f"<p>Hi {_value(data, 'userName', 'User')},</p>"
        f"<p>Your integration <strong>{_value(data, 'integrationName')}</strong> "
        "processed an event successfully.</p>"
        "<ul>"
        f"<li><strong>Event type:</strong> {_value(data, 'eventType')}</li>"
        f"<li><strong>Processed at:</strong> {_value(data, 'processedAt')}</li>"
        f"{call_row}"
        "</ul>"
        "</body></html>"
    )


def render_error(data: dict[str, Any]) -> str:
    return (
        "<html><body style=\"font-family: Arial, sans-serif; color: #333;\">"
        "<h2 style=\"color: #dc2626;\">Sync failed</h2>"
        f"<p>Hi {_value(data, 'userName', 'User')},</p>"
        f"<p>Your integration <strong>{_value(data, 'integrationName')}</strong> "
        "could not process an event and has stopped retrying it.</p>"
        "<ul>"
        f"<li><strong>Error:</strong> {_value(data, 'errorMessage', 'Unknown error')}</li>"
        f"<li><strong>Event type:</strong> {_value(data, 'eventType')}</li>"
        f"<li><strong>Attempts:</strong> {_value(data, 'retryCount', '0')}</li>"
        f"<li><strong>Failed at:</strong> {_value(data, 'failedAt')}</li>"
        f"<li><strong>Integration ID:</strong> {_value(data, 'integrationId')}</li>"
        "</ul>"
        "<p>Check the integration's field mappings and account connection, then retry "
        "the event from the activity log.</p>"
        "</body></html>"
    )


RENDERERS = {
    NotificationTemplate.SYNC_SUCCESS.value: render_success,
    NotificationTemplate.SYNC_ERROR.value: render_error,
}


def build_email(message: NotificationMessage, sender: str) -> dict[str, Any]:
    """Resend send parameters for ``message``."""
    return {
        "from": sender,
        "to": [message.to],
        "subject": message.subject,
        "html": RENDERERS[message.template.value](message.data),
    }


class NotificationService:
    """Sends rendered notification emails through Resend.

    Without RESEND_API_KEY messages are logged and dropped.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._api_key = self._settings.RESEND_API_KEY
        if not self._api_key:
            logger.warning("notification.not_configured", reason="RESEND_API_KEY not set")
        else:
            resend.api_key = self._api_key

    async def send(self, message: NotificationMessage) -> str | None:
        """Render and send one notification, returning the Resend email id.

        Raises:
            RemoteError: Resend rejected the message or could not be reached.
                Raised so the notification queue retries it.
        """
        if not self._api_key:
            logger.info("notification.skipped", to=message.to, subject=message.subject)
            return None

        params = build_email(message, self._settings.NOTIFICATION_FROM_EMAIL)
        logger.info("notification.sending", to=message.to, template=message.template.value)
        try:
            result = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as exc:
            logger.error("notification.send_failed", to=message.to, error=str(exc))
            raise RemoteError(f"Failed to send email: {exc}", provider="resend") from exc

        email_id = result.get("id", "")
        logger.info("notification.sent", to=message.to, subject=message.subject, email_id=email_id)
        return email_id
