"""Tests for the Redis-backed job queue, worker pool and dead letter queue.

Redis is an AsyncMock; assertions are on the commands issued.

Covers:
- Job stream serialization
- Enqueue: ready stream vs delayed sorted set, per-queue attempt budgets
- Promotion of due delayed jobs
- Priority reads and acknowledgement
- Worker pool: per-key in-flight lock released only by its owner, busy
  deferral, queue-level retry, dead-lettering, lifecycle
- DLQ replay
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from src.callsync.queue.dlq import DeadLetterQueue
from src.callsync.queue.queue import CONSUMER_GROUP, JobQueue
from src.callsync.queue.schemas import Job, JobPriority, QueueName
from src.callsync.queue.worker import RELEASE_LOCK_SCRIPT, WorkerPool


@pytest.fixture
def redis() -> AsyncMock:
    client = AsyncMock()
    client.zrangebyscore.return_value = []
    client.xreadgroup.return_value = []
    client.set.return_value = True
    client.xadd.return_value = "9-0"
    return client


@pytest.fixture
def job_queue(redis) -> JobQueue:
    return JobQueue(redis)


@pytest.fixture
def dlq(job_queue) -> DeadLetterQueue:
    return DeadLetterQueue(job_queue)


def _sync_job(**overrides) -> Job:
    defaults = {
        "queue": QueueName.SYNC,
        "name": "process-sync",
        "data": {"sync_event_id": "evt-1"},
        "max_attempts": 1,
        "dedupe_key": "evt-1",
    }
    defaults.update(overrides)
    return Job(**defaults)


def _webhook_job(**overrides) -> Job:
    defaults = {"queue": QueueName.WEBHOOK, "name": "process-webhook", "data": {"x": 1}, "max_attempts": 3}
    defaults.update(overrides)
    return Job(**defaults)


def _delayed_member(redis: AsyncMock) -> tuple[dict, float]:
    mapping = redis.zadd.await_args.args[1]
    [(member, score)] = mapping.items()
    return json.loads(member), score


# ── Job Schema ───────────────────────────────────────────────────────────────


class TestJobSchema:
    def test_stream_dict_is_flat_strings(self):
        raw = _sync_job(priority=JobPriority.HIGH).to_stream_dict()

        assert all(isinstance(v, str) for v in raw.values())
        assert raw["queue"] == "sync-processing"
        assert raw["priority"] == "high"

        restored = Job.from_stream_dict(raw)
        assert restored.data == {"sync_event_id": "evt-1"}
        assert restored.dedupe_key == "evt-1"

    def test_missing_dedupe_key_restored_as_none(self):
        raw = _webhook_job().to_stream_dict()
        assert Job.from_stream_dict(raw).dedupe_key is None


# ── JobQueue ─────────────────────────────────────────────────────────────────


class TestJobQueue:
    async def test_enqueue_ready_job(self, job_queue, redis):
        job = await job_queue.enqueue(QueueName.WEBHOOK, "process-webhook", {"a": 1}, priority=JobPriority.HIGH)

        assert job.max_attempts == 3
        redis.xadd.assert_awaited_once()
        assert redis.xadd.await_args.args[0] == "callsync:queue:webhook-processing:high"
        redis.zadd.assert_not_awaited()

    async def test_sync_jobs_get_one_attempt(self, job_queue):
        job = await job_queue.enqueue(QueueName.SYNC, "process-sync", {}, dedupe_key="evt-1")
        assert job.max_attempts == 1

    async def test_enqueue_delayed_job(self, job_queue, redis):
        await job_queue.enqueue(QueueName.SYNC, "process-sync", {"sync_event_id": "evt-1"}, delay_ms=4000)

        redis.xadd.assert_not_awaited()
        assert redis.zadd.await_args.args[0] == "callsync:queue:sync-processing:delayed"
        member, _score = _delayed_member(redis)
        assert member["name"] == "process-sync"

    async def test_promote_due_moves_owned_jobs(self, job_queue, redis):
        due = json.dumps(_sync_job().to_stream_dict())
        taken = json.dumps(_sync_job(dedupe_key="evt-2").to_stream_dict())
        redis.zrangebyscore.return_value = [due, taken]
        redis.zrem.side_effect = [1, 0]

        promoted = await job_queue.promote_due(QueueName.SYNC)

        assert promoted == 1
        redis.xadd.assert_awaited_once()
        assert redis.xadd.await_args.args[0] == "callsync:queue:sync-processing:normal"

    async def test_read_prefers_high_priority(self, job_queue, redis):
        job = _webhook_job(priority=JobPriority.HIGH)
        redis.xreadgroup.return_value = [("callsync:queue:webhook-processing:high", [("1-0", job.to_stream_dict())])]

        claimed = await job_queue.read(QueueName.WEBHOOK, "c-1")

        stream_key, message_id, read_job = claimed
        assert stream_key == "callsync:queue:webhook-processing:high"
        assert message_id == "1-0"
        assert read_job.job_id == job.job_id
        assert redis.xreadgroup.await_count == 1
        assert redis.xreadgroup.await_args.kwargs["groupname"] == CONSUMER_GROUP

    async def test_read_nothing(self, job_queue, redis):
        assert await job_queue.read(QueueName.WEBHOOK, "c-1", block_ms=10) is None
        assert redis.xreadgroup.await_count == 2

    async def test_ack_removes_message(self, job_queue, redis):
        await job_queue.ack("stream", "1-0")

        redis.xack.assert_awaited_once_with("stream", CONSUMER_GROUP, "1-0")
        redis.xdel.assert_awaited_once_with("stream", "1-0")

    async def test_stats(self, job_queue, redis):
        redis.xlen.return_value = 2
        redis.zcard.return_value = 1

        assert await job_queue.stats(QueueName.SYNC) == {"pending": 4, "delayed": 1, "dead": 2}


# ── WorkerPool ───────────────────────────────────────────────────────────────


class TestWorkerPool:
    LOCK_KEY = "callsync:queue:sync-processing:delayed:lock:evt-1"

    async def test_runs_handler_under_lock(self, job_queue, dlq, redis):
        handler = AsyncMock()
        pool = WorkerPool(job_queue, QueueName.SYNC, handler, 1, dlq)
        job = _sync_job()

        await pool.process(job, "1-0")

        redis.set.assert_awaited_once_with(self.LOCK_KEY, "1-0", nx=True, px=300_000)
        handler.assert_awaited_once_with(job)
        redis.eval.assert_awaited_once_with(RELEASE_LOCK_SCRIPT, 1, self.LOCK_KEY, "1-0")
        redis.delete.assert_not_awaited()

    async def test_busy_key_is_deferred(self, job_queue, dlq, redis):
        """A second job for an in-flight sync event waits without using an attempt."""
        redis.set.return_value = None
        handler = AsyncMock()
        pool = WorkerPool(job_queue, QueueName.SYNC, handler, 1, dlq, busy_requeue_ms=500)

        await pool.process(_sync_job(), "1-0")

        handler.assert_not_awaited()
        member, _score = _delayed_member(redis)
        assert member["attempts_made"] == "0"
        redis.eval.assert_not_awaited()

    async def test_jobs_without_key_skip_lock(self, job_queue, dlq, redis):
        handler = AsyncMock()
        pool = WorkerPool(job_queue, QueueName.WEBHOOK, handler, 1, dlq)

        await pool.process(_webhook_job(), "1-0")

        redis.set.assert_not_awaited()
        handler.assert_awaited_once()

    async def test_failure_retried_with_backoff(self, job_queue, dlq, redis):
        handler = AsyncMock(side_effect=RuntimeError("db down"))
        pool = WorkerPool(job_queue, QueueName.WEBHOOK, handler, 1, dlq)

        await pool.process(_webhook_job(attempts_made=1), "1-0")

        member, _score = _delayed_member(redis)
        assert member["attempts_made"] == "2"
        redis.xadd.assert_not_awaited()

    async def test_exhausted_job_dead_lettered(self, job_queue, dlq, redis):
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        pool = WorkerPool(job_queue, QueueName.SYNC, handler, 1, dlq)

        await pool.process(_sync_job(), "1-0")

        key, data = redis.xadd.await_args.args
        assert key == "callsync:queue:sync-processing:dlq"
        assert data["_dlq_error"] == "boom"
        assert data["_dlq_original_id"] == "1-0"
        assert data["attempts_made"] == "1"
        redis.eval.assert_awaited_once_with(RELEASE_LOCK_SCRIPT, 1, self.LOCK_KEY, "1-0")

    async def test_run_once_processes_and_acks(self, job_queue, dlq, redis):
        job = _webhook_job()
        redis.xreadgroup.return_value = [("callsync:queue:webhook-processing:high", [("3-0", job.to_stream_dict())])]
        handler = AsyncMock()
        pool = WorkerPool(job_queue, QueueName.WEBHOOK, handler, 1, dlq)

        assert await pool.run_once("c-1") is True

        handler.assert_awaited_once()
        redis.xack.assert_awaited_once_with("callsync:queue:webhook-processing:high", CONSUMER_GROUP, "3-0")

    async def test_run_once_idle(self, job_queue, dlq, redis):
        pool = WorkerPool(job_queue, QueueName.WEBHOOK, AsyncMock(), 1, dlq)
        assert await pool.run_once("c-1", block_ms=10) is False

    async def test_start_and_stop(self, job_queue, dlq, redis):
        async def idle_read(**kwargs):
            await asyncio.sleep(0.01)
            return []

        redis.xreadgroup.side_effect = idle_read
        pool = WorkerPool(job_queue, QueueName.NOTIFICATION, AsyncMock(), 2, dlq)

        pool.start()
        await asyncio.sleep(0.05)
        assert len(pool._tasks) == 2
        await pool.stop()

        assert pool._tasks == []


# ── Dead Letter Queue ────────────────────────────────────────────────────────


class TestDeadLetterQueue:
    async def test_replay_resets_attempts(self, dlq, redis):
        job = _webhook_job(attempts_made=3)
        redis.xrange.return_value = [("5-0", {**job.to_stream_dict(), "_dlq_error": "boom", "_dlq_original_id": "1-0"})]

        replayed = await dlq.replay(QueueName.WEBHOOK, "5-0")

        assert replayed.job_id == job.job_id
        assert replayed.attempts_made == 0
        key, data = redis.xadd.await_args.args
        assert key == "callsync:queue:webhook-processing:normal"
        assert "_dlq_error" not in data
        redis.xdel.assert_awaited_once_with("callsync:queue:webhook-processing:dlq", "5-0")

    async def test_replay_unknown_message(self, dlq, redis):
        redis.xrange.return_value = []
        with pytest.raises(ValueError, match="not found"):
            await dlq.replay(QueueName.WEBHOOK, "404-0")
