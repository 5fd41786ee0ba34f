"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
the SyncError exception handler, lifespan wiring of the pipeline and its
worker pools, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.callsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.callsync.api.v1.router import router as v1_router
from src.callsync.config import Settings, get_settings
from src.callsync.core.database import close_db, get_session, init_db
from src.callsync.core.errors import SyncError
from src.callsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.callsync.core.redis import close_redis, get_redis_pool
from src.callsync.crm.registry import CRMRegistry
from src.callsync.notifications.email import NotificationService
from src.callsync.pipeline.calls import CallProcessor
from src.callsync.pipeline.intake import WebhookIntake
from src.callsync.pipeline.state_machine import SyncProcessor, SyncStateMachine
from src.callsync.pipeline.webhook_urls import WebhookUrlConfig
from src.callsync.pipeline.workflows import WorkflowEngine
from src.callsync.queue.dlq import DeadLetterQueue
from src.callsync.queue.queue import JobQueue
from src.callsync.queue.schemas import Job, QueueName
from src.callsync.queue.worker import WorkerPool
from src.callsync.repository import SyncRepository
from src.callsync.schemas import NotificationMessage

logger = structlog.get_logger(__name__)


def build_worker_pools(
    app: FastAPI, settings: Settings, notifications: NotificationService
) -> list[WorkerPool]:
    """One pool per queue, each routing jobs to its pipeline entry point."""
    intake: WebhookIntake = app.state.webhook_intake
    machine: SyncStateMachine = app.state.state_machine

    async def handle_webhook(job: Job) -> None:
        await intake.process_webhook_job(job.data)

    async def handle_sync(job: Job) -> None:
        await machine.process(job.data["sync_event_id"])

    async def handle_notification(job: Job) -> None:
        await notifications.send(NotificationMessage.model_validate(job.data))

    queue: JobQueue = app.state.job_queue
    dlq: DeadLetterQueue = app.state.dead_letter_queue
    return [
        WorkerPool(queue, QueueName.WEBHOOK, handle_webhook, settings.WEBHOOK_WORKER_CONCURRENCY, dlq),
        WorkerPool(queue, QueueName.SYNC, handle_sync, settings.SYNC_WORKER_CONCURRENCY, dlq),
        WorkerPool(
            queue, QueueName.NOTIFICATION, handle_notification, settings.NOTIFICATION_WORKER_CONCURRENCY, dlq
        ),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and the pipeline on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Pipeline wiring ───────────────────────────────────────────────────
    queue = JobQueue(get_redis_pool())
    store = SyncRepository(session_factory=get_session)
    registry = CRMRegistry()
    webhook_urls = WebhookUrlConfig(settings.API_BASE_URL)
    processor = SyncProcessor(registry, webhook_urls)
    state_machine = SyncStateMachine(store, queue, processor, settings)

    app.state.job_queue = queue
    app.state.dead_letter_queue = DeadLetterQueue(queue)
    app.state.sync_store = store
    app.state.webhook_urls = webhook_urls
    app.state.state_machine = state_machine
    app.state.webhook_intake = WebhookIntake(
        store=store,
        queue=queue,
        state_machine=state_machine,
        processor=processor,
        workflows=WorkflowEngine(registry),
        calls=CallProcessor(registry),
    )
    logger.info("pipeline.initialized", crm_providers=registry.providers(), webhook_base_url=webhook_urls.base_url)

    # ── Worker pools ──────────────────────────────────────────────────────
    pools: list[WorkerPool] = []
    if settings.WORKERS_ENABLED:
        pools = build_worker_pools(app, settings, NotificationService(settings))
        for pool in pools:
            pool.start()

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    for pool in pools:
        await pool.stop()
    await close_db()
    await close_redis()


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CallSync API",
        version="0.1.0",
        description="Voice call and CRM webhook sync pipeline",
        lifespan=lifespan,
    )

    app.add_exception_handler(SyncError, sync_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
