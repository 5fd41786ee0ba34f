"""Async client for the Retell voice platform -- outbound call creation."""

from __future__ import annotations

import re
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.callsync.core.errors import RemoteError

logger = structlog.get_logger(__name__)

_E164 = re.compile(r"^\+[1-9]\d{1,14}$")
_NON_DIGIT = re.compile(r"\D")

_retell_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


def format_dial_number(phone: str) -> str:
    """Best-effort E.164 for dialing; 10-digit numbers are assumed North American."""
    digits = _NON_DIGIT.sub("", phone)
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def is_dialable(phone: str) -> bool:
    return bool(_E164.match(phone))


class RetellClient:
    """Places outbound calls through the Retell REST API.

    Args:
        api_key: Retell API key for the account.
        base_url: API root.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use MockTransport).
    """

    TIMEOUT = 30.0

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.retellai.com",
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout or self.TIMEOUT
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @_retell_retry
    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            response = await client.post(path, json=body)
            response.raise_for_status()
            return response.json()

    async def create_call(
        self,
        agent_id: str,
        to_number: str,
        from_number: str | None = None,
        metadata: dict[str, Any] | None = None,
        webhook_url: str | None = None,
    ) -> dict[str, Any]:
        """Start an outbound call; the response carries ``call_id``.

        Raises:
            RemoteError: Retell rejected the call or could not be reached.
        """
        body = {
            "agent_id": agent_id,
            "to_number": to_number,
            "from_number": from_number,
            "metadata": metadata or {},
            "webhook_url": webhook_url,
        }
        try:
            data = await self._post("/v1/call", {k: v for k, v in body.items() if v is not None})
        except httpx.HTTPError as exc:
            logger.error("retell.create_call_failed", agent_id=agent_id, error=str(exc))
            raise RemoteError(f"Failed to create Retell call: {exc}", provider="retell") from exc

        logger.info("retell.call_created", call_id=data.get("call_id"), agent_id=agent_id)
        return data
