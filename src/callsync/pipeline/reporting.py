"""Integration health summary and sync event CSV export."""

from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone

from src.callsync.repository import SyncEventStore
from src.callsync.schemas import IntegrationHealth, SyncEvent, SyncStatus

HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

CSV_HEADERS = [
    "ID",
    "Integration",
    "Event Type",
    "Status",
    "Call ID",
    "Error Message",
    "Retry Count",
    "Created At",
    "Processed At",
]


def error_rate(events: list[SyncEvent]) -> int:
    """Percentage of failed events, rounded to a whole number."""
    if not events:
        return 0
    failed = sum(1 for e in events if e.status == SyncStatus.FAILED)
    return round(failed / len(events) * 100)


def average_processing_seconds(events: list[SyncEvent]) -> int:
    durations = [
        (e.processed_at - e.created_at).total_seconds()
        for e in events
        if e.status == SyncStatus.COMPLETED and e.processed_at is not None
    ]
    if not durations:
        return 0
    return round(sum(durations) / len(durations))


def health_status(recent: list[SyncEvent], rate: int) -> str:
    recent_failures = sum(1 for e in recent if e.status == SyncStatus.FAILED)
    if rate > 50:
        return CRITICAL
    if rate > 20 or recent_failures > 5:
        return WARNING
    return HEALTHY


def recommendations(status: str, rate: int, recent: list[SyncEvent]) -> list[str]:
    advice = []
    if status == CRITICAL:
        advice.append("High error rate detected. Check integration configuration and account connections.")
    if rate > 20:
        advice.append("Consider reviewing field mappings and trigger filters.")
    if sum(1 for e in recent if e.retry_count > 0) > 3:
        advice.append("Multiple retries detected. Check for connectivity issues.")
    if not advice:
        advice.append("Integration is performing well.")
    return advice


async def integration_health(
    store: SyncEventStore, integration_id: str, now: datetime | None = None
) -> IntegrationHealth:
    """Summarise the last day of activity against the last week's error rate.

    Error rate and average processing time cover the last 7 days; the recent
    window is the last 24 hours, capped at 100 events.
    """
    now = now or datetime.now(timezone.utc)
    week = await store.sync_events_since(integration_id, now - timedelta(days=7))
    recent = await store.sync_events_since(integration_id, now - timedelta(hours=24), limit=100)
    total = await store.count_sync_events(integration_id)

    rate = error_rate(week)
    status = health_status(recent, rate)
    return IntegrationHealth(
        status=status,
        total_events=total,
        recent_events=len(recent),
        error_rate=rate,
        average_processing_seconds=average_processing_seconds(week),
        last_processed=recent[0].processed_at if recent else None,
        recommendations=recommendations(status, rate, recent),
    )


def export_csv(events: list[SyncEvent], integration_names: dict[str, str]) -> str:
    """Render sync events as CSV with every field quoted."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for event in events:
        writer.writerow(
            [
                event.id,
                integration_names.get(event.integration_id, ""),
                event.event_type.value,
                event.status.value,
                event.call_id or "",
                event.error_message or "",
                event.retry_count,
                event.created_at.isoformat(),
                event.processed_at.isoformat() if event.processed_at else "",
            ]
        )
    return buffer.getvalue()


def export_filename(today: datetime | None = None) -> str:
    today = today or datetime.now(timezone.utc)
    return f"sync-events-{today.date().isoformat()}.csv"
