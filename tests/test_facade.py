"""
Unit tests for the tab data facade.

Tests per-view staleness, forced refreshes and exports.
"""

import csv
import io
import json
import os
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from usage_ledger.config.loader import View
from usage_ledger.core.facade import TabDataFacade, build_view, resolve_view
from usage_ledger.core.ingestion import IngestionCoordinator, IngestionResult
from usage_ledger.core.worker import AggregationTimeoutError, AggregationWorker
from usage_ledger.storage.repository import UsageRepository

T0 = datetime(2024, 1, 1, 10, 10, tzinfo=timezone.utc)


def log_line(timestamp: str, message_id: str, input_tokens: int, output_tokens: int,
             session_id: str = "S1", cwd: str = "/home/dev/alpha") -> str:
    return json.dumps({
        "type": "assistant",
        "timestamp": timestamp,
        "sessionId": session_id,
        "cwd": cwd,
        "message": {
            "id": message_id,
            "model": "claude-3-5-sonnet-20241022",
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    })


def append(path: Path, *lines: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")


@pytest.fixture
def setup():
    """Facade over a temporary store with the two-line session logged."""
    with tempfile.TemporaryDirectory() as temp_dir:
        log = Path(temp_dir) / "projects" / "alpha" / "s1.jsonl"
        append(
            log,
            log_line("2024-01-01T10:00:00Z", "msg_1", 1000, 500),
            log_line("2024-01-01T10:05:00Z", "msg_2", 200, 100),
        )
        repository = UsageRepository(os.path.join(temp_dir, "usage.db"))
        repository.initialize()
        coordinator = IngestionCoordinator(repository, [log.parent.parent], clock=lambda: T0)
        coordinator.run_pass = MagicMock(wraps=coordinator.run_pass)
        with AggregationWorker(timeout_seconds=30) as worker:
            facade = TabDataFacade(repository, coordinator, worker=worker, clock=lambda: T0)
            yield facade, coordinator, log


class TestViews:
    """Test view contents."""

    def test_overview(self, setup):
        facade, coordinator, log = setup
        data = facade.get_view("overview", now=T0)

        assert data["total_tokens"] == 1800
        assert data["total_cost"] == pytest.approx(0.0126)
        assert data["total_sessions"] == 1
        assert data["currency"] == "USD"
        assert data["tokens"]["input_tokens"] == 1200
        assert data["session_status"] == "active"

    def test_projects_and_sessions(self, setup):
        facade, coordinator, log = setup
        projects = facade.get_view("projects", now=T0)
        assert [p["name"] for p in projects["projects"]] == ["alpha"]

        sessions = facade.get_view(View.SESSIONS, now=T0)
        assert sessions["sessions"][0]["session_id"] == "S1"
        assert sessions["sessions"][0]["entries"] == 2

    def test_monthly_daily_active(self, setup):
        facade, coordinator, log = setup
        monthly = facade.get_view("monthly", now=T0)
        assert monthly["billing_periods"][0]["key"] == "2024-01"
        assert monthly["current_period_cost"] == pytest.approx(0.0126)

        daily = facade.get_view("daily", now=T0)
        assert daily["daily"][0]["date"] == "2024-01-01"

        active = facade.get_view("active", now=T0)
        assert len(active["activity_windows"]) == 12
        assert active["current_session"]["session_id"] == "S1"

    def test_unknown_view(self, setup):
        facade, coordinator, log = setup
        with pytest.raises(ValueError, match="Unknown view 'weekly'"):
            facade.get_view("weekly")

    def test_resolve_view(self):
        assert resolve_view("Monthly") is View.MONTHLY
        assert resolve_view(View.DAILY) is View.DAILY


class TestStaleness:
    """Test per-view refresh windows."""

    def test_fresh_view_is_served_from_cache(self, setup):
        facade, coordinator, log = setup
        facade.get_view("overview", now=T0)
        append(log, log_line("2024-01-01T10:08:00Z", "msg_3", 100, 100))

        cached = facade.get_view("overview", now=T0 + timedelta(seconds=10))

        assert cached["total_tokens"] == 1800
        assert coordinator.run_pass.call_count == 1

    def test_stale_view_is_refreshed(self, setup):
        facade, coordinator, log = setup
        facade.get_view("overview", now=T0)
        append(log, log_line("2024-01-01T10:08:00Z", "msg_3", 100, 100))

        fresh = facade.get_view("overview", now=T0 + timedelta(seconds=31))

        assert fresh["total_tokens"] == 2000
        assert coordinator.run_pass.call_count == 2

    def test_views_age_independently(self, setup):
        """The active view refreshes while the monthly view stays cached."""
        facade, coordinator, log = setup
        facade.get_view("active", now=T0)
        facade.get_view("monthly", now=T0)
        append(log, log_line("2024-01-01T10:08:00Z", "msg_3", 100, 100))

        later = T0 + timedelta(seconds=10)
        assert facade.is_stale("active", later) is True
        assert facade.is_stale("monthly", later) is False

        monthly = facade.get_view("monthly", now=later)
        facade.get_view("active", now=later)
        assert monthly["billing_periods"][0]["total_tokens"] == 1800
        assert facade.metrics.tokens.total_tokens == 2000

    def test_incremental_refresh_matches_new_totals(self, setup):
        facade, coordinator, log = setup
        facade.get_view("overview", now=T0)
        append(
            log,
            log_line("2024-01-01T10:08:00Z", "msg_3", 100, 100),
            log_line("2024-01-01T10:09:00Z", "msg_4", 100, 100, session_id="S2", cwd="/home/dev/beta"),
        )

        data = facade.force_refresh("projects", now=T0 + timedelta(seconds=1))

        assert sorted(p["name"] for p in data["projects"]) == ["alpha", "beta"]
        assert facade.metrics.sessions.total_entries == 4
        assert facade.metrics.sessions.total_sessions == 2

    def test_custom_refresh_interval(self, setup):
        facade, coordinator, log = setup
        facade.refresh_intervals[View.OVERVIEW] = 0
        facade.get_view("overview", now=T0)
        facade.get_view("overview", now=T0)
        assert coordinator.run_pass.call_count == 2


class TestForcedRefresh:
    """Test explicit refresh requests."""

    def test_force_refresh_ignores_window(self, setup):
        facade, coordinator, log = setup
        facade.get_view("monthly", now=T0)
        append(log, log_line("2024-01-01T10:08:00Z", "msg_3", 100, 100))

        data = facade.force_refresh("monthly", now=T0 + timedelta(seconds=1))

        assert data["billing_periods"][0]["total_tokens"] == 2000

    def test_force_refresh_all_rebuilds_every_view(self, setup):
        facade, coordinator, log = setup
        facade.get_view("overview", now=T0)
        coordinator.state.last_processed_timestamp = datetime(2030, 1, 1, tzinfo=timezone.utc)

        views = facade.force_refresh_all(now=T0 + timedelta(seconds=1))

        assert set(views) == {v.value for v in View}
        assert views["overview"]["total_tokens"] == 1800
        assert coordinator.state.is_initial_load is False
        # The rescan found nothing new, so the bogus watermark is simply gone
        assert coordinator.state.last_processed_timestamp is None
        for view in View:
            assert facade.is_stale(view, T0 + timedelta(seconds=2)) is False


class TestExport:
    """Test view exports."""

    def test_json(self, setup):
        facade, coordinator, log = setup
        document = json.loads(facade.export_view("projects", "json", now=T0))
        assert document["export"]["view"] == "projects"
        assert document["export"]["format"] == "json"
        assert document["data"]["projects"][0]["name"] == "alpha"

    def test_csv(self, setup):
        facade, coordinator, log = setup
        rows = list(csv.DictReader(io.StringIO(facade.export_view("sessions", "csv", now=T0))))
        assert len(rows) == 1
        assert rows[0]["session_id"] == "S1"
        assert rows[0]["entries"] == "2"

    def test_csv_without_table_lists_metrics(self, setup):
        facade, coordinator, log = setup
        rows = list(csv.reader(io.StringIO(facade.export_view("overview", "csv", now=T0))))
        assert rows[0] == ["metric", "value"]
        assert ["total_tokens", "1800"] in rows

    def test_markdown(self, setup):
        facade, coordinator, log = setup
        document = facade.export_view("daily", "markdown", now=T0)
        assert document.startswith("# Usage Ledger: Daily")
        assert "| Metric | Value |" in document
        assert "## Daily" in document
        assert "2024-01-01" in document

    def test_unknown_format(self, setup):
        facade, coordinator, log = setup
        with pytest.raises(ValueError, match="Unknown export format 'xml'"):
            facade.export_view("overview", "xml", now=T0)

    def test_build_view_is_json_serializable(self, setup):
        facade, coordinator, log = setup
        facade.get_view("overview", now=T0)
        for view in View:
            json.dumps(build_view(view, facade.metrics))


class TestRefreshDeadline:
    """Test that a refresh never blocks past the worker's deadline."""

    def test_stuck_ingestion_times_out(self, setup):
        facade, coordinator, log = setup
        release = threading.Event()

        def stuck():
            release.wait(5)
            return IngestionResult()

        coordinator._ingest = stuck
        with AggregationWorker(timeout_seconds=0.2) as short_worker:
            facade.worker = short_worker
            started = time.monotonic()
            with pytest.raises(AggregationTimeoutError):
                facade.get_view("overview", now=T0)
            assert time.monotonic() - started < 2
            assert facade.metrics is None
            assert facade.is_stale("overview", T0) is True

            release.set()
            deadline = time.monotonic() + 5
            while coordinator.in_progress and time.monotonic() < deadline:
                time.sleep(0.01)

        del coordinator._ingest
        with AggregationWorker(timeout_seconds=30) as worker:
            facade.worker = worker
            data = facade.get_view("overview", now=T0)
        assert data["total_tokens"] == 1800

    def test_refresh_runs_off_the_calling_thread(self, setup):
        facade, coordinator, log = setup
        threads = []
        original = coordinator._ingest

        def recording():
            threads.append(threading.current_thread())
            return original()

        coordinator._ingest = recording
        facade.get_view("overview", now=T0)

        assert threads and threads[0] is not threading.current_thread()
