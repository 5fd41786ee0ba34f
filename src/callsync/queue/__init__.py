"""Durable work queues for webhook, sync and notification jobs.

Redis Streams hold ready jobs per queue and priority lane; a sorted set per
queue holds delayed jobs until they are due. Worker pools consume with
bounded concurrency and an in-flight lock per sync event.

Exports:
    Job: Queued unit of work.
    QueueName: The three pipeline queues.
    JobPriority: Ready lanes (high, normal).
    JobQueue: Enqueue/read/ack/reschedule.
    WorkerPool: Bounded-concurrency consumer for one queue.
    DeadLetterQueue: Storage and replay for exhausted jobs.
"""

from __future__ import annotations

from src.callsync.queue.dlq import DeadLetterQueue
from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import Job, JobPriority, QueueName
from src.callsync.queue.worker import WorkerPool

__all__ = [
    "DeadLetterQueue",
    "Job",
    "JobPriority",
    "JobQueue",
    "QueueName",
    "WorkerPool",
]
