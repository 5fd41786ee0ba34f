"""Base URL used when handing webhook URLs to providers.

Created once at startup from ``API_BASE_URL`` and stored on ``app.state``;
the admin API may replace the base URL at runtime.
"""

from __future__ import annotations

import structlog

from src.callsync.core.errors import ValidationError

logger = structlog.get_logger(__name__)


def _normalise(base_url: str) -> str:
    value = (base_url or "").strip().rstrip("/")
    if not value.startswith(("http://", "https://")):
        raise ValidationError(f"Webhook base URL must be an absolute http(s) URL: {base_url!r}")
    return value


class WebhookUrlConfig:
    def __init__(self, base_url: str) -> None:
        self._base_url = _normalise(base_url)

    @property
    def base_url(self) -> str:
        return self._base_url

    def url_for(self, integration_id: str, provider: str = "retell") -> str:
        return f"{self._base_url}/webhooks/{provider}/{integration_id}"

    def update_base_url(self, base_url: str) -> str:
        """Replace the base URL and return the effective value.

        Applying the same value twice is a no-op.
        """
        new_value = _normalise(base_url)
        if new_value != self._base_url:
            logger.info("webhook_urls.base_url_updated", old=self._base_url, new=new_value)
            self._base_url = new_value
        return self._base_url
