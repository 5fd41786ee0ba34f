"""CRM capability interface -- the operations the pipeline needs from any CRM.

Every CRM backend implements this ABC. Payloads are plain dicts in the CRM's
own field vocabulary (the field mapping engine and workflow actions produce
them); each method returns the created/updated record as a dict carrying at
least an ``id``.

Implementations must be safe to call again for the same logical retry: the
pipeline is at-least-once and relies on search-before-create, not on the
adapter, for de-duplication.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CRMAdapter(ABC):
    """Abstract interface for CRM write and lookup operations.

    Methods:
        create_person / update_person: Contact records.
        create_deal / update_deal: Deal (opportunity) records.
        create_activity / update_activity: Calls, meetings, tasks.
        get_deals / get_persons / get_activities: Filtered listing.
        search_persons: Exact-field search used for contact reconciliation.
        add_note: Attach an HTML note to a deal.
    """

    provider: str = "unknown"

    @abstractmethod
    async def create_person(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a person, return the stored record."""
        ...

    @abstractmethod
    async def update_person(self, person_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_deal(self, data: dict[str, Any]) -> dict[str, Any]:
        """Create a deal, return the stored record."""
        ...

    @abstractmethod
    async def update_deal(self, deal_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_activity(self, data: dict[str, Any]) -> dict[str, Any]:
        """Log an activity, return the stored record."""
        ...

    @abstractmethod
    async def update_activity(self, activity_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_deals(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_persons(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_activities(self, filters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def search_persons(self, term: str, field: str) -> list[dict[str, Any]]:
        """Persons whose ``field`` (phone, email, name) matches ``term``."""
        ...

    @abstractmethod
    async def add_note(self, deal_id: Any, content: str) -> dict[str, Any]:
        ...
