"""CRM integration layer -- capability interface plus concrete adapters.

- CRMAdapter: abstract capability interface the pipeline writes through
- PipedriveAdapter: httpx-based adapter with tenacity transport retries
- CRMRegistry: resolves an integration's CRM account to an adapter
"""

from src.callsync.crm.adapter import CRMAdapter
from src.callsync.crm.pipedrive import PipedriveAdapter
from src.callsync.crm.registry import CRMRegistry

__all__ = [
    "CRMAdapter",
    "CRMRegistry",
    "PipedriveAdapter",
]
