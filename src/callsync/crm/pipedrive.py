"""Pipedrive CRM adapter over the Pipedrive v1 REST API.

Transport failures (connect errors, timeouts, 5xx) are retried with tenacity,
3 attempts with exponential backoff. Whatever still fails surfaces as
RemoteError so the sync state machine can schedule a retry.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from src.callsync.core.errors import RemoteError
from src.callsync.crm.adapter import CRMAdapter

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (httpx.ConnectError, httpx.TimeoutException)):
        return True
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


_pipedrive_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_transient),
    reraise=True,
)


class PipedriveAdapter(CRMAdapter):
    """CRMAdapter for one Pipedrive account.

    Args:
        access_token: OAuth bearer token for the account.
        base_url: API root, ``https://api.pipedrive.com/v1`` in production.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use MockTransport).
    """

    provider = "pipedrive"

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.pipedrive.com/v1",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_pipedrive_retry
    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        async with self._client() as client:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json().get("data")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            return await self._send(method, path, **kwargs)
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            logger.error(
                "pipedrive.request_failed",
                method=method,
                path=path,
                status=exc.response.status_code,
                detail=detail,
            )
            raise RemoteError(
                f"Pipedrive {method} {path} failed ({exc.response.status_code}): {detail}",
                provider=self.provider,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("pipedrive.transport_failed", method=method, path=path, error=str(exc))
            raise RemoteError(f"Pipedrive {method} {path} failed: {exc}", provider=self.provider) from exc

    # ── Writes ──────────────────────────────────────────────────────────────

    async def create_person(self, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._request("POST", "/persons", json=data)
        logger.info("pipedrive.person_created", person_id=record.get("id"))
        return record

    async def update_person(self, person_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._request("PUT", f"/persons/{person_id}", json=data)
        logger.info("pipedrive.person_updated", person_id=person_id)
        return record or {"id": person_id}

    async def create_deal(self, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._request("POST", "/deals", json=data)
        logger.info("pipedrive.deal_created", deal_id=record.get("id"))
        return record

    async def update_deal(self, deal_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._request("PUT", f"/deals/{deal_id}", json=data)
        logger.info("pipedrive.deal_updated", deal_id=deal_id)
        return record or {"id": deal_id}

    async def create_activity(self, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._request("POST", "/activities", json=data)
        logger.info("pipedrive.activity_created", activity_id=record.get("id"))
        return record

    async def update_activity(self, activity_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        record = await self._request("PUT", f"/activities/{activity_id}", json=data)
        logger.info("pipedrive.activity_updated", activity_id=activity_id)
        return record or {"id": activity_id}

    async def add_note(self, deal_id: Any, content: str) -> dict[str, Any]:
        record = await self._request("POST", "/notes", json={"deal_id": deal_id, "content": content})
        logger.info("pipedrive.note_added", deal_id=deal_id, note_id=record.get("id"))
        return record

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_deals(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return await self._request("GET", "/deals", params=filters or {}) or []

    async def get_persons(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return await self._request("GET", "/persons", params=filters or {}) or []

    async def get_activities(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return await self._request("GET", "/activities", params=filters or {}) or []

    async def search_persons(self, term: str, field: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", "/persons/search", params={"term": term, "fields": field, "exact_match": "true"}
        )
        items = (data or {}).get("items") or []
        return [entry["item"] for entry in items if entry.get("item")]


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    return str(body.get("error") or body.get("error_info") or body)[:200]
