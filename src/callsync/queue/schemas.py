"""Job schemas for the Redis-backed work queues.

Jobs serialize to flat string dicts for Redis Streams (and to JSON for the
delayed-job sorted set) and deserialize back losslessly.

Key patterns:
    {prefix}:queue:{queue}:{priority}   ready jobs (stream)
    {prefix}:queue:{queue}:delayed      delayed jobs (sorted set, score = due ms)
    {prefix}:queue:{queue}:dlq          dead-lettered jobs (stream)
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class QueueName(str, Enum):
    WEBHOOK = "webhook-processing"
    SYNC = "sync-processing"
    NOTIFICATION = "notification-sending"


class JobPriority(str, Enum):
    """Ready-job lanes; workers drain ``high`` before ``normal``."""

    HIGH = "high"
    NORMAL = "normal"


# Queue-level attempts. Sync jobs get exactly one: the sync state machine
# owns their retries and schedules each next attempt itself.
QUEUE_ATTEMPTS: dict[QueueName, int] = {
    QueueName.WEBHOOK: 3,
    QueueName.SYNC: 1,
    QueueName.NOTIFICATION: 3,
}

QUEUE_BACKOFF_BASE_MS = 2000


class Job(BaseModel):
    """One unit of queued work.

    Attributes:
        job_id: Unique identifier (auto-generated UUID4).
        queue: Queue the job belongs to.
        name: Handler-level job name, e.g. ``process-webhook``.
        data: JSON payload for the handler.
        priority: Ready lane.
        attempts_made: Failed attempts so far.
        max_attempts: Queue-level attempt budget.
        dedupe_key: Jobs sharing a key never run concurrently (sync event id).
        created_at: UTC enqueue time.
    """

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    queue: QueueName
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    attempts_made: int = 0
    max_attempts: int = 1
    dedupe_key: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_stream_dict(self) -> dict[str, str]:
        """Flat string dict suitable for XADD."""
        return {
            "job_id": self.job_id,
            "queue": self.queue.value,
            "name": self.name,
            "data": json.dumps(self.data),
            "priority": self.priority.value,
            "attempts_made": str(self.attempts_made),
            "max_attempts": str(self.max_attempts),
            "dedupe_key": self.dedupe_key or "",
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> Job:
        return cls(
            job_id=raw["job_id"],
            queue=QueueName(raw["queue"]),
            name=raw["name"],
            data=json.loads(raw["data"]) if raw.get("data") else {},
            priority=JobPriority(raw.get("priority", JobPriority.NORMAL.value)),
            attempts_made=int(raw.get("attempts_made", "0")),
            max_attempts=int(raw.get("max_attempts", "1")),
            dedupe_key=raw.get("dedupe_key") or None,
            created_at=datetime.fromisoformat(raw["created_at"]),
        )
