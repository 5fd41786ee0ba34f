"""Tests for integration health and CSV export.

Covers:
- Error rate and average processing time
- Health thresholds (critical / warning / healthy) and recommendations
- integration_health over the in-memory store
- CSV export quoting, headers and filename
"""

from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

from src.callsync.pipeline import reporting
from src.callsync.schemas import SyncEventType, SyncStatus

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def events(make_sync_event):
    def _make(statuses: list[SyncStatus], age: timedelta = timedelta(hours=1), **overrides):
        return [make_sync_event(status=s, created_at=NOW - age, **overrides) for s in statuses]

    return _make


class TestMetrics:
    def test_error_rate(self, events):
        assert reporting.error_rate(events([SyncStatus.FAILED, SyncStatus.COMPLETED, SyncStatus.COMPLETED])) == 33
        assert reporting.error_rate([]) == 0

    def test_average_processing_only_counts_completed(self, make_sync_event):
        done = [
            make_sync_event(status=SyncStatus.COMPLETED, created_at=NOW, processed_at=NOW + timedelta(seconds=s))
            for s in (2, 4)
        ]
        pending = make_sync_event(status=SyncStatus.PENDING, created_at=NOW)
        assert reporting.average_processing_seconds([*done, pending]) == 3

    @pytest.mark.parametrize(
        "rate, recent_failures, expected",
        [
            (51, 0, reporting.CRITICAL),
            (21, 0, reporting.WARNING),
            (10, 6, reporting.WARNING),
            (20, 5, reporting.HEALTHY),
        ],
    )
    def test_health_status(self, events, rate, recent_failures, expected):
        recent = events([SyncStatus.FAILED] * recent_failures)
        assert reporting.health_status(recent, rate) == expected

    def test_recommendations(self, events):
        retried = events([SyncStatus.COMPLETED] * 4, retry_count=1)
        advice = reporting.recommendations(reporting.CRITICAL, 60, retried)
        assert len(advice) == 3
        assert reporting.recommendations(reporting.HEALTHY, 0, []) == ["Integration is performing well."]


class TestIntegrationHealth:
    async def test_summary(self, store, events):
        week_old = events([SyncStatus.FAILED, SyncStatus.FAILED], age=timedelta(days=3))
        recent = events([SyncStatus.COMPLETED, SyncStatus.COMPLETED], processed_at=NOW)
        ancient = events([SyncStatus.FAILED], age=timedelta(days=30))
        for event in [*week_old, *recent, *ancient]:
            store.add_sync_event(event)

        health = await reporting.integration_health(store, "int-1", now=NOW)

        assert health.total_events == 5
        assert health.recent_events == 2
        assert health.error_rate == 50
        assert health.status == reporting.WARNING
        assert health.last_processed == NOW

    async def test_no_events(self, store):
        health = await reporting.integration_health(store, "int-1", now=NOW)

        assert health.status == reporting.HEALTHY
        assert health.total_events == 0
        assert health.last_processed is None


class TestCsvExport:
    def test_rows_fully_quoted(self, make_sync_event):
        event = make_sync_event(
            id="evt-1",
            status=SyncStatus.FAILED,
            event_type=SyncEventType.CALL_TRIGGERED,
            error_message='Pipedrive said "no", twice',
            retry_count=4,
            created_at=NOW,
        )

        text = reporting.export_csv([event], {"int-1": "Acme Voice"})

        lines = text.splitlines()
        assert lines[0] == ",".join(f'"{h}"' for h in reporting.CSV_HEADERS)
        row = next(csv.reader(io.StringIO(lines[1])))
        assert row == [
            "evt-1",
            "Acme Voice",
            "call_triggered",
            "failed",
            "",
            'Pipedrive said "no", twice',
            "4",
            NOW.isoformat(),
            "",
        ]

    def test_filename(self):
        assert reporting.export_filename(NOW) == "sync-events-2026-03-02.csv"
