"""
Tests for the command line interface.
"""

import json
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from newsdigest import cli
from newsdigest.cli import (
    EXIT_INVALID_INPUT,
    EXIT_NOT_FOUND,
    EXIT_SUCCESS,
    main,
    parse_timeframe,
)
from newsdigest.scheduler import SchedulerService


@pytest.fixture
def db_args(tmp_path):
    return ["--db", str(tmp_path / "jobs.sqlite")]


def _submit(db_args, capsys, *extra) -> str:
    assert main([*db_args, "submit", *extra]) == EXIT_SUCCESS
    out = capsys.readouterr().out
    return out.splitlines()[0].split(": ", 1)[1]


class TestParseTimeframe:

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30m", timedelta(minutes=30)),
            ("24h", timedelta(hours=24)),
            ("7d", timedelta(days=7)),
            ("ALL", None),
        ],
    )
    def test_valid(self, value, expected):
        assert parse_timeframe(value) == expected

    @pytest.mark.parametrize("value", ["", "24", "h", "1w", "-1h"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_timeframe(value)


class TestSubmit:

    def test_submit_persists_pending_job(self, db_args, capsys):
        job_id = _submit(db_args, capsys, "rss_check", "Morning feeds", "--priority", "high", "--payload", '{"feeds": 3}')

        assert main([*db_args, "jobs", "show", job_id]) == EXIT_SUCCESS
        shown = json.loads(capsys.readouterr().out)
        assert shown["status"] == "pending"
        assert shown["priority"] == 3
        assert shown["payload"] == {"feeds": 3}
        assert shown["metadata"] == {"source": "cli"}
        assert shown["timeout"] == 60.0

    def test_invalid_payload_json(self, db_args, capsys):
        assert main([*db_args, "submit", "rss_check", "feeds", "--payload", "{not json"]) == EXIT_INVALID_INPUT
        assert "Invalid payload JSON" in capsys.readouterr().err

    def test_payload_must_be_object(self, db_args, capsys):
        assert main([*db_args, "submit", "rss_check", "feeds", "--payload", "[1, 2]"]) == EXIT_INVALID_INPUT

    def test_invalid_job_type(self, db_args, capsys):
        assert main([*db_args, "submit", "Bad Type", "feeds"]) == EXIT_INVALID_INPUT
        assert "type" in capsys.readouterr().err


class TestJobs:

    def test_list_newest_first_and_filtered(self, db_args, capsys):
        first = _submit(db_args, capsys, "rss_check", "first")
        second = _submit(db_args, capsys, "backup", "second")

        assert main([*db_args, "jobs", "list"]) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "showing 2" in out
        assert out.index(second) < out.index(first)

        assert main([*db_args, "jobs", "list", "--status", "completed"]) == EXIT_SUCCESS
        assert "No jobs found" in capsys.readouterr().out

        assert main([*db_args, "jobs", "list", "--limit", "1"]) == EXIT_SUCCESS
        assert "showing 1" in capsys.readouterr().out

    def test_show_missing_job(self, db_args, capsys):
        assert main([*db_args, "jobs", "show", "no-such-job"]) == EXIT_NOT_FOUND
        assert "Job not found" in capsys.readouterr().err


class TestStatus:

    def test_status_counts(self, db_args, capsys):
        _submit(db_args, capsys, "rss_check", "feeds")

        assert main([*db_args, "status", "--timeframe", "all"]) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "Total jobs: 1" in out
        assert "pending" in out

    def test_invalid_timeframe(self, db_args, capsys):
        assert main([*db_args, "status", "--timeframe", "soon"]) == EXIT_INVALID_INPUT


class TestSchedules:

    def test_list_shows_configured_schedules(self, db_args, monkeypatch, capsys):
        monkeypatch.setenv("SCHEDULER_DISABLED_SCHEDULES", "backup")

        assert main([*db_args, "schedules", "list"]) == EXIT_SUCCESS
        lines = capsys.readouterr().out.splitlines()

        assert "Schedules (8):" in lines[0]
        backup = next(line for line in lines if line.strip().startswith("backup"))
        digest = next(line for line in lines if line.strip().startswith("daily_digest"))
        assert "disabled" in backup
        assert "email_send" in digest
        assert "disabled" not in digest

    def test_run_persists_scheduled_job(self, db_args, capsys):
        assert main([*db_args, "schedules", "run", "daily_digest"]) == EXIT_SUCCESS
        job_id = capsys.readouterr().out.splitlines()[0].split(": ", 1)[1]

        assert main([*db_args, "jobs", "show", job_id]) == EXIT_SUCCESS
        shown = json.loads(capsys.readouterr().out)
        assert shown["status"] == "pending"
        assert shown["job_type"] == "email_send"
        assert shown["payload"] == {"scheduled": True, "schedule": "daily_digest"}

    def test_run_unknown_schedule(self, db_args, capsys):
        assert main([*db_args, "schedules", "run", "weekly_digest"]) == EXIT_NOT_FOUND
        assert "Schedule not found: weekly_digest" in capsys.readouterr().err


class TestRun:

    def test_run_builds_service_with_builtin_handlers(self, db_args, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
        monkeypatch.setenv("SCHEDULER_WEBHOOK_URL", "https://example.com/hook")
        runner = MagicMock()

        with patch.object(cli, "_run_until_interrupted", runner), patch.object(cli.asyncio, "run") as run:
            assert main([*db_args, "run"]) == EXIT_SUCCESS

        run.assert_called_once()
        service = runner.call_args.args[0]
        assert isinstance(service, SchedulerService)
        assert {"health_check", "statistics_report"} <= set(service._handlers)
        assert len(service.dispatcher._listeners) == 1
        assert list((tmp_path / "logs").glob("scheduler_*.log"))

    def test_keyboard_interrupt_exits_cleanly(self, db_args, monkeypatch, tmp_path):
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))

        with patch.object(cli, "_run_until_interrupted", MagicMock()), patch.object(
            cli.asyncio, "run", side_effect=KeyboardInterrupt
        ):
            assert main([*db_args, "run"]) == EXIT_SUCCESS


class TestMain:

    def test_no_command_prints_help(self, db_args, capsys):
        assert main(db_args) == EXIT_SUCCESS
        assert "usage: newsdigest" in capsys.readouterr().out

    def test_invalid_settings(self, db_args, monkeypatch, capsys):
        monkeypatch.setenv("SCHEDULER_MAX_CONCURRENCY", "0")

        assert main([*db_args, "status"]) == cli.EXIT_CONFIG_ERROR
        assert "Invalid scheduler settings" in capsys.readouterr().err
