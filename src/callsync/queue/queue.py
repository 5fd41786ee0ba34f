"""Redis Streams job queue with priority lanes and delayed jobs.

Ready jobs are appended to one stream per (queue, priority) and consumed
through a consumer group. Delayed jobs wait in a sorted set scored by their
due time (epoch ms) and are moved onto their ready stream by promote_due(),
which every worker calls before reading. Retry scheduling therefore never
sleeps in-process.
"""

from __future__ import annotations

import json
import time
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.callsync.queue.schemas import QUEUE_ATTEMPTS, Job, JobPriority, QueueName

logger = structlog.get_logger(__name__)

CONSUMER_GROUP = "workers"


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """Enqueue, read, acknowledge and reschedule jobs.

    Args:
        redis: Raw async Redis client (decode_responses=True).
        prefix: Key namespace shared by all queues.
    """

    def __init__(self, redis: aioredis.Redis, prefix: str = "callsync") -> None:
        self._redis = redis
        self._prefix = prefix
        self._groups_ready: set[str] = set()

    # ── Keys ────────────────────────────────────────────────────────────────

    def stream_key(self, queue: QueueName, priority: JobPriority) -> str:
        return f"{self._prefix}:queue:{queue.value}:{priority.value}"

    def delayed_key(self, queue: QueueName) -> str:
        return f"{self._prefix}:queue:{queue.value}:delayed"

    def dlq_key(self, queue: QueueName) -> str:
        return f"{self._prefix}:queue:{queue.value}:dlq"

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    # ── Producing ───────────────────────────────────────────────────────────

    async def enqueue(
        self,
        queue: QueueName,
        name: str,
        data: dict[str, Any],
        priority: JobPriority = JobPriority.NORMAL,
        delay_ms: int = 0,
        dedupe_key: str | None = None,
    ) -> Job:
        """Add a job, immediately ready or due after ``delay_ms``."""
        job = Job(
            queue=queue,
            name=name,
            data=data,
            priority=priority,
            max_attempts=QUEUE_ATTEMPTS[queue],
            dedupe_key=dedupe_key,
        )
        await self.push(job, delay_ms)
        return job

    async def push(self, job: Job, delay_ms: int = 0) -> None:
        if delay_ms > 0:
            await self._redis.zadd(
                self.delayed_key(job.queue),
                {json.dumps(job.to_stream_dict()): _now_ms() + delay_ms},
            )
            logger.debug("job.delayed", queue=job.queue.value, job_id=job.job_id, delay_ms=delay_ms)
            return

        message_id = await self._redis.xadd(self.stream_key(job.queue, job.priority), job.to_stream_dict())
        logger.debug("job.enqueued", queue=job.queue.value, job_id=job.job_id, message_id=message_id)

    async def promote_due(self, queue: QueueName) -> int:
        """Move delayed jobs whose due time has passed onto their ready stream.

        ZREM decides ownership, so concurrent workers never promote the same
        job twice.
        """
        key = self.delayed_key(queue)
        due = await self._redis.zrangebyscore(key, "-inf", _now_ms())
        promoted = 0
        for member in due:
            if not await self._redis.zrem(key, member):
                continue
            job = Job.from_stream_dict(json.loads(member))
            await self._redis.xadd(self.stream_key(queue, job.priority), job.to_stream_dict())
            promoted += 1
        if promoted:
            logger.debug("job.promoted", queue=queue.value, count=promoted)
        return promoted

    # ── Consuming ───────────────────────────────────────────────────────────

    async def _ensure_group(self, stream_key: str) -> None:
        if stream_key in self._groups_ready:
            return
        try:
            await self._redis.xgroup_create(stream_key, CONSUMER_GROUP, id="0", mkstream=True)
        except aioredis.ResponseError:
            pass  # group already exists
        self._groups_ready.add(stream_key)

    async def read(
        self, queue: QueueName, consumer: str, block_ms: int = 1000
    ) -> tuple[str, str, Job] | None:
        """Claim the next ready job, high priority first.

        Returns:
            ``(stream_key, message_id, job)`` or None when nothing arrived
            within ``block_ms``.
        """
        for priority, block in ((JobPriority.HIGH, None), (JobPriority.NORMAL, block_ms)):
            stream_key = self.stream_key(queue, priority)
            await self._ensure_group(stream_key)
            messages = await self._redis.xreadgroup(
                groupname=CONSUMER_GROUP,
                consumername=consumer,
                streams={stream_key: ">"},
                count=1,
                block=block,
            )
            for _key, entries in messages or []:
                for message_id, raw in entries:
                    return stream_key, message_id, Job.from_stream_dict(raw)
        return None

    async def ack(self, stream_key: str, message_id: str) -> None:
        await self._redis.xack(stream_key, CONSUMER_GROUP, message_id)
        await self._redis.xdel(stream_key, message_id)

    async def retry_later(self, job: Job, delay_ms: int) -> Job:
        """Reschedule a failed job with one more attempt recorded."""
        retried = job.model_copy(update={"attempts_made": job.attempts_made + 1})
        await self.push(retried, delay_ms)
        return retried

    # ── Monitoring ──────────────────────────────────────────────────────────

    async def stats(self, queue: QueueName) -> dict[str, int]:
        pending = 0
        for priority in JobPriority:
            pending += await self._redis.xlen(self.stream_key(queue, priority))
        return {
            "pending": pending,
            "delayed": await self._redis.zcard(self.delayed_key(queue)),
            "dead": await self._redis.xlen(self.dlq_key(queue)),
        }
