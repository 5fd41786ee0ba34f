"""Dead letter queue for jobs that exhausted their queue-level attempts.

Dead jobs are kept with failure metadata for review and can be replayed
onto their original queue with a fresh attempt budget.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import Job, QueueName

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter streams backed by Redis, one per queue.

    Args:
        queue: JobQueue whose keys and Redis client are shared.
    """

    def __init__(self, queue: JobQueue) -> None:
        self._queue = queue
        self._redis = queue.redis

    async def send_to_dlq(self, job: Job, message_id: str, error: str) -> str:
        """Store a failed job along with why and when it died.

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_key = self._queue.dlq_key(job.queue)
        dlq_data: dict[str, str] = {
            **job.to_stream_dict(),
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        dlq_message_id = await self._redis.xadd(dlq_key, dlq_data)

        logger.warning(
            "job.dead_lettered",
            queue=job.queue.value,
            job_id=job.job_id,
            attempts=job.attempts_made,
            error=error,
        )
        return dlq_message_id

    async def list_messages(self, queue: QueueName, count: int = 50) -> list[tuple[str, dict[str, Any]]]:
        return await self._redis.xrange(self._queue.dlq_key(queue), count=count)

    async def replay(self, queue: QueueName, dlq_message_id: str) -> Job:
        """Re-enqueue a dead job with its attempt count reset.

        Raises:
            ValueError: If the DLQ message ID is not found.
        """
        dlq_key = self._queue.dlq_key(queue)
        messages = await self._redis.xrange(dlq_key, min=dlq_message_id, max=dlq_message_id, count=1)
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found in {dlq_key}"
            raise ValueError(msg)

        _msg_id, data = messages[0]
        raw = {k: v for k, v in data.items() if not k.startswith("_dlq_")}
        job = Job.from_stream_dict(raw).model_copy(update={"attempts_made": 0})
        await self._queue.push(job)
        await self._redis.xdel(dlq_key, dlq_message_id)

        logger.info("job.replayed", queue=queue.value, job_id=job.job_id, dlq_message_id=dlq_message_id)
        return job
