"""Resolve a CRM account to a concrete adapter.

Providers are registered as factories taking the account. Accounts whose
provider is unknown, or known but without an adapter, raise
ConfigurationError: retrying cannot fix them.
"""

from __future__ import annotations

from typing import Callable

import structlog

from src.callsync.config import get_settings
from src.callsync.core.errors import ConfigurationError
from src.callsync.crm.adapter import CRMAdapter
from src.callsync.crm.pipedrive import PipedriveAdapter
from src.callsync.schemas import CRMAccount

logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[CRMAccount], CRMAdapter]

# Providers the intake layer recognises but this service cannot write to yet.
RECOGNISED_PROVIDERS = ("pipedrive", "hubspot", "salesforce", "zoho")


def _pipedrive(account: CRMAccount) -> CRMAdapter:
    settings = get_settings()
    return PipedriveAdapter(
        access_token=account.access_token,
        base_url=settings.PIPEDRIVE_API_BASE_URL,
        timeout=settings.CRM_HTTP_TIMEOUT,
    )


class CRMRegistry:
    """Provider name -> adapter factory."""

    def __init__(self, factories: dict[str, AdapterFactory] | None = None) -> None:
        self._factories: dict[str, AdapterFactory] = (
            dict(factories) if factories is not None else {"pipedrive": _pipedrive}
        )

    def register(self, provider: str, factory: AdapterFactory) -> None:
        self._factories[provider.lower()] = factory

    def providers(self) -> list[str]:
        return sorted(self._factories)

    def adapter_for(self, account: CRMAccount) -> CRMAdapter:
        provider = account.provider.lower()
        factory = self._factories.get(provider)
        if factory is None:
            if provider in RECOGNISED_PROVIDERS:
                raise ConfigurationError(f"CRM provider '{provider}' has no adapter configured")
            raise ConfigurationError(f"Unsupported CRM provider: {account.provider}")
        logger.debug("crm_registry.resolved", provider=provider)
        return factory(account)
