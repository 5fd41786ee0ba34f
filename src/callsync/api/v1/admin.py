"""Operational endpoints: webhook base URL, queue statistics, dead letters."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel

from src.callsync.pipeline.webhook_urls import WebhookUrlConfig
from src.callsync.queue.dlq import DeadLetterQueue
from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import QueueName

router = APIRouter(prefix="/admin", tags=["admin"])


class WebhookBaseUrlRequest(BaseModel):
    base_url: str


def _get_webhook_urls(request: Request) -> WebhookUrlConfig:
    """Retrieve WebhookUrlConfig from app.state, 503 if not available."""
    config = getattr(request.app.state, "webhook_urls", None)
    if config is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook URL configuration not initialized",
        )
    return config


def _get_queue(request: Request) -> JobQueue:
    queue = getattr(request.app.state, "job_queue", None)
    if queue is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue not initialized",
        )
    return queue


def _get_dlq(request: Request) -> DeadLetterQueue:
    dlq = getattr(request.app.state, "dead_letter_queue", None)
    if dlq is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dead letter queue not initialized",
        )
    return dlq


@router.get("/webhook-base-url")
async def get_webhook_base_url(request: Request) -> dict:
    return {"success": True, "base_url": _get_webhook_urls(request).base_url}


@router.put("/webhook-base-url")
async def update_webhook_base_url(body: WebhookBaseUrlRequest, request: Request) -> dict:
    """Replace the webhook base URL; repeating the same value changes nothing."""
    effective = _get_webhook_urls(request).update_base_url(body.base_url)
    return {"success": True, "base_url": effective}


@router.get("/queues")
async def queue_stats(request: Request) -> dict:
    queue = _get_queue(request)
    return {name.value: await queue.stats(name) for name in QueueName}


@router.get("/queues/{queue_name}/dead-letters")
async def list_dead_letters(queue_name: QueueName, request: Request, count: int = 50) -> dict:
    messages = await _get_dlq(request).list_messages(queue_name, count=count)
    return {"messages": [{"id": message_id, **data} for message_id, data in messages]}


@router.post("/queues/{queue_name}/dead-letters/{message_id}/replay")
async def replay_dead_letter(queue_name: QueueName, message_id: str, request: Request) -> dict:
    try:
        job = await _get_dlq(request).replay(queue_name, message_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {"success": True, "job_id": job.job_id}
