"""
Unit tests for incremental ingestion.

Tests idempotent passes, the watermark, timestamp repair and the in-flight guard.
"""

import json
import os
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from usage_ledger.core.aggregation import compute
from usage_ledger.core.ingestion import (
    IngestionCoordinator,
    IngestionResult,
    IngestionState,
    discover_log_files,
)
from usage_ledger.storage.repository import UsageRepository

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


def log_line(timestamp: str, message_id: str, input_tokens: int = 1000, output_tokens: int = 500,
             session_id: str = "S1") -> str:
    return json.dumps({
        "type": "assistant",
        "timestamp": timestamp,
        "sessionId": session_id,
        "requestId": f"req-{message_id}",
        "cwd": "/home/dev/alpha",
        "message": {
            "id": message_id,
            "model": "claude-3-5-sonnet-20241022",
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    })


def write_log(path: Path, *lines: str, mode: str = "w") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, mode, encoding="utf-8") as f:
        for line in lines:
            f.write(line + "\n")
    return path


SCENARIO_LINES = (
    log_line("2024-01-01T10:00:00Z", "msg_1", 1000, 500),
    log_line("2024-01-01T10:05:00Z", "msg_2", 200, 100),
)


@pytest.fixture
def workspace():
    """Log directory, repository and coordinator in a temporary directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        logs = Path(temp_dir) / "projects"
        logs.mkdir()
        repository = UsageRepository(os.path.join(temp_dir, "usage.db"))
        repository.initialize()
        coordinator = IngestionCoordinator(repository, [logs], clock=fixed_clock)
        yield logs, repository, coordinator


class TestDiscovery:
    """Test log file discovery."""

    def test_finds_nested_jsonl_files(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            write_log(root / "a" / "one.jsonl", "{}")
            write_log(root / "b" / "c" / "two.jsonl", "{}")
            write_log(root / "notes.txt", "{}")

            found = discover_log_files([root, root / "missing"])
            assert [p.name for p in found] == ["one.jsonl", "two.jsonl"]

    def test_accepts_single_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = write_log(Path(temp_dir) / "x.jsonl", "{}")
            assert discover_log_files([path]) == [path]


class TestIngestionPass:
    """Test single and repeated passes."""

    def test_two_line_session(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)

        result = coordinator.run_pass()

        assert result.files_scanned == 1
        assert result.lines_read == 2
        assert result.inserted == 2
        assert len(result.inserted_records) == 2
        metrics = compute(repository.scan_all(), now=NOW)
        assert metrics.tokens.total_tokens == 1800
        assert metrics.financial.total_cost == pytest.approx(0.0126)
        assert metrics.sessions.total_sessions == 1

    def test_reingesting_same_lines_changes_nothing(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        coordinator.run_pass()
        before = compute(repository.scan_all(), now=NOW)

        # An explicit initial load rereads everything
        fresh = IngestionCoordinator(repository, [logs], state=IngestionState(), clock=fixed_clock)
        result = fresh.run_pass()

        assert result.inserted == 0
        assert result.duplicates == 2
        after = compute(repository.scan_all(), now=NOW)
        assert after.record_count == before.record_count == 2
        assert after.financial.total_cost == pytest.approx(before.financial.total_cost)

    def test_many_passes_are_idempotent(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        for _ in range(5):
            coordinator.run_pass()
            coordinator.reset_watermark()
        assert len(repository.scan_all()) == 2

    def test_duplicates_across_files_in_one_pass(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", SCENARIO_LINES[0])
        write_log(logs / "alpha" / "s1-copy.jsonl", SCENARIO_LINES[0])

        result = coordinator.run_pass()

        assert result.inserted == 1
        assert result.duplicates == 1

    def test_malformed_lines_are_skipped(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", "not json", '{"type": "user"}', SCENARIO_LINES[0])

        result = coordinator.run_pass()

        assert result.lines_read == 3
        assert result.records_parsed == 1
        assert result.inserted == 1

    def test_no_sources(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            repository = UsageRepository(os.path.join(temp_dir, "usage.db"))
            repository.initialize()
            coordinator = IngestionCoordinator(repository, [Path(temp_dir) / "missing"])
            result = coordinator.run_pass()
            assert result == IngestionResult(watermark=None)


class TestTimestampRepair:
    """Test ingestion of lines with unusable timestamps."""

    def test_pre_2020_timestamp_is_stored_as_now(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "old.jsonl", log_line("1999-01-01T00:00:00Z", "msg_old"))

        result = coordinator.run_pass()

        assert result.timestamp_repairs == 1
        stored = repository.scan_all()
        assert len(stored) == 1
        assert stored[0].timestamp == NOW
        assert stored[0].timestamp.year != 1999

    def test_repaired_record_does_not_advance_watermark(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "old.jsonl", log_line("1999-01-01T00:00:00Z", "msg_old"))
        coordinator.run_pass()
        assert coordinator.state.last_processed_timestamp is None

    def test_repaired_record_is_not_duplicated(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "old.jsonl", log_line("1999-01-01T00:00:00Z", "msg_old"))
        coordinator.run_pass()

        later = IngestionCoordinator(
            repository, [logs], clock=lambda: datetime(2024, 7, 1, tzinfo=timezone.utc)
        )
        later.run_pass()
        assert len(repository.scan_all()) == 1

    def test_future_timestamp_does_not_stall_ingestion(self, workspace):
        """A far-future line is repaired, so later lines are still ingested."""
        logs, repository, coordinator = workspace
        path = write_log(
            logs / "alpha" / "s1.jsonl",
            log_line("2024-01-01T10:00:00Z", "msg_1"),
            log_line("2099-01-01T00:00:00Z", "msg_future"),
        )

        first = coordinator.run_pass()
        assert first.inserted == 2
        assert first.timestamp_repairs == 1
        assert first.watermark == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
        assert max(r.timestamp for r in repository.scan_all()) == NOW

        write_log(path, log_line("2024-05-31T09:00:00Z", "msg_2"), mode="a")
        second = coordinator.run_pass()

        assert second.inserted == 1
        assert [r.dedup_key for r in second.inserted_records] == ["msg_2-req-msg_2"]
        assert len(repository.scan_all()) == 3


class TestWatermark:
    """Test incremental skipping."""

    def test_watermark_advances_to_newest_record(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)

        result = coordinator.run_pass()

        expected = datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc)
        assert result.watermark == expected
        assert coordinator.state.last_processed_timestamp == expected
        assert coordinator.state.is_initial_load is False

    def test_older_lines_are_skipped_until_reset(self, workspace):
        logs, repository, coordinator = workspace
        path = write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        coordinator.run_pass()

        write_log(path, log_line("2024-01-01T09:00:00Z", "msg_early"), mode="a")
        result = coordinator.run_pass()
        assert result.inserted == 0
        assert result.skipped_by_watermark == 2

        coordinator.reset_watermark()
        assert coordinator.state.is_initial_load is False
        assert coordinator.state.last_processed_timestamp is None

        result = coordinator.run_pass()
        assert result.inserted == 1
        assert len(repository.scan_all()) == 3

    def test_newer_lines_are_ingested(self, workspace):
        logs, repository, coordinator = workspace
        path = write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        coordinator.run_pass()

        write_log(path, log_line("2024-01-01T11:00:00Z", "msg_3"), mode="a")
        result = coordinator.run_pass()

        assert result.inserted == 1
        assert [r.dedup_key for r in result.inserted_records] == ["msg_3-req-msg_3"]

    def test_unmodified_files_are_not_read(self, workspace):
        logs, repository, coordinator = workspace
        path = write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        coordinator.run_pass()

        old = datetime(2023, 1, 1, tzinfo=timezone.utc).timestamp()
        os.utime(path, (old, old))
        result = coordinator.run_pass()

        assert result.files_scanned == 1
        assert result.lines_read == 0

    def test_initial_load_ignores_existing_watermark(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        state = IngestionState(last_processed_timestamp=datetime(2030, 1, 1, tzinfo=timezone.utc))
        coordinator = IngestionCoordinator(repository, [logs], state=state, clock=fixed_clock)

        assert coordinator.run_pass().inserted == 2

    def test_new_coordinator_continues_from_stored_watermark(self, workspace):
        """A second process on the same store does not reread old lines."""
        logs, repository, coordinator = workspace
        path = write_log(logs / "alpha" / "s1.jsonl", *SCENARIO_LINES)
        coordinator.run_pass()

        restarted = IngestionCoordinator(repository, [logs], clock=fixed_clock)
        assert restarted.state.is_initial_load is False
        assert restarted.state.last_processed_timestamp == datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc)

        write_log(path, log_line("2024-01-01T11:00:00Z", "msg_3"), mode="a")
        result = restarted.run_pass()

        assert result.inserted == 1
        assert result.skipped_by_watermark == 1
        assert result.records_parsed == 3
        assert result.duplicates == 1

    def test_repaired_rows_do_not_seed_the_watermark(self, workspace):
        logs, repository, coordinator = workspace
        write_log(logs / "alpha" / "old.jsonl", log_line("1999-01-01T00:00:00Z", "msg_old"))
        coordinator.run_pass()

        restarted = IngestionCoordinator(repository, [logs], clock=fixed_clock)
        assert restarted.state.last_processed_timestamp is None
        assert restarted.state.is_initial_load is True

    def test_state_reset_restores_initial_load(self):
        state = IngestionState(last_processed_timestamp=NOW, seen_keys={"a"}, is_initial_load=False)
        state.reset()
        assert state.is_initial_load is True
        assert state.last_processed_timestamp is None
        assert state.seen_keys == set()


class TestInFlightGuard:
    """Test that concurrent pass requests share one pass."""

    def test_second_caller_waits_for_running_pass(self, workspace):
        logs, repository, coordinator = workspace
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_ingest():
            calls.append(1)
            started.set()
            release.wait(5)
            return IngestionResult(inserted=7)

        coordinator._ingest = slow_ingest
        results = []
        first = threading.Thread(target=lambda: results.append(coordinator.run_pass()))
        first.start()
        assert started.wait(5)
        assert coordinator.in_progress is True

        second = threading.Thread(target=lambda: results.append(coordinator.run_pass()))
        second.start()
        time.sleep(0.1)
        release.set()
        first.join(5)
        second.join(5)

        assert len(calls) == 1
        assert [r.inserted for r in results] == [7, 7]
        assert coordinator.in_progress is False

    def test_failed_pass_clears_guard(self, workspace):
        logs, repository, coordinator = workspace

        def broken():
            raise RuntimeError("disk gone")

        coordinator._ingest = broken
        with pytest.raises(RuntimeError, match="disk gone"):
            coordinator.run_pass()
        assert coordinator.in_progress is False
