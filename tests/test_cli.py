"""
Tests for the CLI interface.
"""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from usage_ledger.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from usage_ledger.storage.repository import UsageRepository

runner = CliRunner()


def _log_line(timestamp: str, message_id: str, input_tokens: int, output_tokens: int) -> str:
    return json.dumps({
        "type": "assistant",
        "timestamp": timestamp,
        "sessionId": "dc236a80-a1de-426e-a094-03aa8ee63315",
        "cwd": "/home/dev/alpha",
        "message": {
            "id": message_id,
            "model": "claude-3-5-sonnet-20241022",
            "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        },
    })


@pytest.fixture
def workspace():
    """Config file pointing at a temporary database and log directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        logs = Path(temp_dir) / "projects" / "alpha"
        logs.mkdir(parents=True)
        (logs / "s1.jsonl").write_text(
            _log_line("2024-01-01T10:00:00Z", "msg_1", 1000, 500) + "\n"
            + _log_line("2024-01-01T10:05:00Z", "msg_2", 200, 100) + "\n",
            encoding="utf-8"
        )
        db_path = os.path.join(temp_dir, "data", "usage.db")
        config_path = os.path.join(temp_dir, "config.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump({
                "database_path": db_path,
                "source_paths": [str(logs.parent)],
            }, f)
        yield config_path, db_path, temp_dir


def _invoke(config_path: str, *args: str, **kwargs):
    return runner.invoke(app, ["--config", config_path, *args], **kwargs)


class TestCLI:
    """Test CLI commands."""

    def test_no_command_prints_hint(self):
        result = runner.invoke(app, [])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init_creates_database(self, workspace):
        config_path, db_path, _ = workspace
        result = _invoke(config_path, "init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output
        assert os.path.exists(db_path)

    def test_ingest_is_idempotent(self, workspace):
        config_path, db_path, _ = workspace
        first = _invoke(config_path, "ingest")
        second = _invoke(config_path, "ingest")

        assert first.exit_code == EXIT_CODE_PASS
        assert second.exit_code == EXIT_CODE_PASS
        assert "Ingestion Pass" in first.output
        assert len(UsageRepository(db_path).scan_all()) == 2

    def test_view_overview(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "view", "overview")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Usage Ledger - Overview" in result.output
        assert "1,800" in result.output

    def test_view_projects_table(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "view", "projects")
        assert result.exit_code == EXIT_CODE_PASS
        assert "alpha" in result.output

    def test_view_unknown(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "view", "weekly")
        assert result.exit_code == 2

    def test_export_json_to_file(self, workspace):
        config_path, _, temp_dir = workspace
        output = os.path.join(temp_dir, "sessions.json")
        result = _invoke(config_path, "export", "sessions", "--format", "json", "--output", output)

        assert result.exit_code == EXIT_CODE_PASS
        with open(output, encoding="utf-8") as f:
            document = json.load(f)
        assert document["export"]["view"] == "sessions"
        assert document["data"]["sessions"][0]["display_id"] == "a094-03a"

    def test_export_csv_to_stdout(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "export", "projects", "-f", "csv")
        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.splitlines()[0].startswith("name,")

    def test_export_unknown_format(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "export", "projects", "-f", "xml")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown export format" in result.output

    def test_refresh_all(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "refresh", "--all")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Refreshed all views" in result.output

    def test_refresh_single_view(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "refresh", "--view", "daily")
        assert result.exit_code == EXIT_CODE_PASS
        assert "2024-01-01" in result.output

    def test_stats_by_project(self, workspace):
        config_path, _, _ = workspace
        _invoke(config_path, "ingest")
        result = _invoke(config_path, "stats", "--by", "project")
        assert result.exit_code == EXIT_CODE_PASS
        assert "alpha" in result.output

    def test_stats_without_data(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "stats", "--by", "model")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage data found" in result.output

    def test_stats_unknown_grouping(self, workspace):
        config_path, _, _ = workspace
        result = _invoke(config_path, "stats", "--by", "weekday")
        assert result.exit_code != EXIT_CODE_PASS

    def test_status(self, workspace):
        config_path, _, _ = workspace
        _invoke(config_path, "ingest")
        result = _invoke(config_path, "status")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Integrity" in result.output
        assert "Entries" in result.output

    def test_maintenance_commands(self, workspace):
        config_path, _, _ = workspace
        _invoke(config_path, "ingest")

        recost = _invoke(config_path, "recost")
        assert recost.exit_code == EXIT_CODE_PASS
        assert "Updated cost for 0 entries" in recost.output

        cleanup = _invoke(config_path, "cleanup")
        assert cleanup.exit_code == EXIT_CODE_PASS
        assert "Removed 0 entries" in cleanup.output

        vacuum = _invoke(config_path, "vacuum")
        assert vacuum.exit_code == EXIT_CODE_PASS

    def test_clear_requires_confirmation(self, workspace):
        config_path, db_path, _ = workspace
        _invoke(config_path, "ingest")

        declined = _invoke(config_path, "clear", input="n\n")
        assert declined.exit_code == EXIT_CODE_PASS
        assert "Aborted" in declined.output
        assert len(UsageRepository(db_path).scan_all()) == 2

        confirmed = _invoke(config_path, "clear", "--yes")
        assert confirmed.exit_code == EXIT_CODE_PASS
        assert "Deleted 2 entries" in confirmed.output
        assert UsageRepository(db_path).scan_all() == []

    def test_missing_config_file(self, workspace):
        _, _, temp_dir = workspace
        result = _invoke(os.path.join(temp_dir, "missing.yaml"), "init")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Config file not found" in result.output

    def test_unexpected_error_fails(self, workspace):
        config_path, _, _ = workspace
        with patch('usage_ledger.cli.main.UsageRepository') as mock_repo:
            mock_repo.return_value.initialize.side_effect = RuntimeError("disk on fire")
            result = _invoke(config_path, "ingest")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "disk on fire" in result.output
