"""Bounded-concurrency worker pool for one job queue.

Each pool runs ``concurrency`` consumer tasks. A job carrying a dedupe key
(the sync event id) only runs while its worker holds a Redis ``SET NX PX``
lock on that key, so one sync event is never processed by two workers at
once; a job whose key is busy is pushed back with a short delay without
consuming an attempt. The lock is released only by the worker that holds it.
Handler failures are retried at queue level with exponential backoff up to
the job's attempt budget, then dead-lettered.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable

import structlog

from src.callsync.core.monitoring import QUEUE_JOB_DURATION, QUEUE_JOBS
from src.callsync.queue.dlq import DeadLetterQueue
from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import QUEUE_BACKOFF_BASE_MS, Job, QueueName

logger = structlog.get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]

# Deletes the lock only while it still holds this worker's message id.
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class WorkerPool:
    """Consumes one queue with a fixed number of concurrent workers.

    Args:
        queue: JobQueue to consume.
        queue_name: Which queue this pool drains.
        handler: Async callable run for every job; must raise on failure.
        concurrency: Number of concurrent consumer tasks.
        dlq: Dead letter queue for exhausted jobs.
        lock_ttl_ms: Expiry of the per-key in-flight lock.
        busy_requeue_ms: Delay before a job whose key is locked is retried.
    """

    def __init__(
        self,
        queue: JobQueue,
        queue_name: QueueName,
        handler: JobHandler,
        concurrency: int,
        dlq: DeadLetterQueue,
        lock_ttl_ms: int = 300_000,
        busy_requeue_ms: int = 1000,
    ) -> None:
        self._queue = queue
        self._queue_name = queue_name
        self._handler = handler
        self._concurrency = concurrency
        self._dlq = dlq
        self._lock_ttl_ms = lock_ttl_ms
        self._busy_requeue_ms = busy_requeue_ms
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._pool_id = uuid.uuid4().hex[:8]

    @property
    def queue_name(self) -> QueueName:
        return self._queue_name

    @property
    def concurrency(self) -> int:
        return self._concurrency

    def _lock_key(self, dedupe_key: str) -> str:
        return f"{self._queue.delayed_key(self._queue_name)}:lock:{dedupe_key}"

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start(self) -> None:
        self._running = True
        for index in range(self._concurrency):
            consumer = f"{self._queue_name.value}-{self._pool_id}-{index}"
            self._tasks.append(asyncio.create_task(self._run(consumer), name=consumer))
        logger.info("worker_pool.started", queue=self._queue_name.value, concurrency=self._concurrency)

    async def stop(self) -> None:
        """Signal workers to stop and wait for in-flight jobs to finish."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("worker_pool.stopped", queue=self._queue_name.value)

    async def _run(self, consumer: str) -> None:
        while self._running:
            try:
                await self.run_once(consumer)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("worker.loop_error", queue=self._queue_name.value, error=str(exc))
                await asyncio.sleep(1)

    # ── Processing ──────────────────────────────────────────────────────────

    async def run_once(self, consumer: str, block_ms: int = 1000) -> bool:
        """Promote due jobs, then claim and process at most one job.

        Returns:
            True if a job was claimed.
        """
        await self._queue.promote_due(self._queue_name)
        claimed = await self._queue.read(self._queue_name, consumer, block_ms=block_ms)
        if claimed is None:
            return False

        stream_key, message_id, job = claimed
        await self.process(job, message_id)
        await self._queue.ack(stream_key, message_id)
        return True

    async def process(self, job: Job, message_id: str) -> None:
        lock_key = None
        if job.dedupe_key:
            lock_key = self._lock_key(job.dedupe_key)
            acquired = await self._queue.redis.set(lock_key, message_id, nx=True, px=self._lock_ttl_ms)
            if not acquired:
                logger.info("job.key_busy", queue=job.queue.value, job_id=job.job_id, key=job.dedupe_key)
                QUEUE_JOBS.labels(queue=job.queue.value, outcome="deferred").inc()
                await self._queue.push(job, self._busy_requeue_ms)
                return

        start = time.perf_counter()
        try:
            await self._handler(job)
        except Exception as exc:
            await self._handle_failure(job, message_id, exc)
        else:
            QUEUE_JOBS.labels(queue=job.queue.value, outcome="completed").inc()
            logger.debug("job.completed", queue=job.queue.value, job_id=job.job_id)
        finally:
            QUEUE_JOB_DURATION.labels(queue=job.queue.value).observe(time.perf_counter() - start)
            if lock_key:
                await self._queue.redis.eval(RELEASE_LOCK_SCRIPT, 1, lock_key, message_id)

    async def _handle_failure(self, job: Job, message_id: str, exc: Exception) -> None:
        attempts = job.attempts_made + 1
        if attempts < job.max_attempts:
            delay_ms = QUEUE_BACKOFF_BASE_MS * 2 ** (attempts - 1)
            await self._queue.retry_later(job, delay_ms)
            QUEUE_JOBS.labels(queue=job.queue.value, outcome="retried").inc()
            logger.warning(
                "job.retry_scheduled",
                queue=job.queue.value,
                job_id=job.job_id,
                attempt=attempts,
                delay_ms=delay_ms,
                error=str(exc),
            )
            return

        QUEUE_JOBS.labels(queue=job.queue.value, outcome="dead").inc()
        await self._dlq.send_to_dlq(
            job.model_copy(update={"attempts_made": attempts}), message_id, str(exc)
        )
