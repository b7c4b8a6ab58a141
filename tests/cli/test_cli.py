"""Tests for the ``keybeat`` CLI."""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

import keybeat.cli.app as cli_module
from keybeat.cli.app import app
from keybeat.scheduling.connections import RedisConnections
from tests._support.fake_redis import FakeRedisServer

runner = CliRunner()


def _write_schedule(directory: Path, filename: str, content: str) -> Path:
    path = directory / filename
    path.write_text(textwrap.dedent(content))
    return path


@pytest.fixture
def server(monkeypatch) -> FakeRedisServer:
    """Route every one-shot command to an in-memory store."""
    server = FakeRedisServer()
    monkeypatch.setattr(
        cli_module,
        "make_connections",
        lambda settings: RedisConnections(settings.url, client_factory=server.client_factory),
    )
    return server


# ── version ──────────────────────────────────────────────────────────


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("keybeat ")


# ── next ─────────────────────────────────────────────────────────────


class TestNextCommand:
    def test_human_json(self):
        result = runner.invoke(app, ["next", "5 minutes", "-n", "3", "--json"])
        assert result.exit_code == 0

        payload = json.loads(result.stdout)
        assert payload["grammar"] == "human"
        assert len(payload["next_run_times"]) == 3

    def test_cron_text(self):
        result = runner.invoke(app, ["next", "0 * * * *", "--tz", "UTC", "-n", "2"])
        assert result.exit_code == 0
        assert "(cron)" in result.output
        assert result.output.count(":00:00+00:00") == 2

    def test_invalid_pattern(self):
        result = runner.invoke(app, ["next", "whenever"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_unknown_timezone(self):
        result = runner.invoke(app, ["next", "1 hour", "--tz", "Mars/Olympus"])
        assert result.exit_code == 1


# ── list ─────────────────────────────────────────────────────────────


class TestListCommand:
    def test_lists_schedules_json(self, tmp_path):
        _write_schedule(tmp_path, "send_email.py", """
            name = "sendEmail"
            interval = "*/5 * * * *"

            def perform(data):
                return None
        """)
        _write_schedule(tmp_path, "heartbeat.py", """
            from keybeat import ScheduleDefinition

            schedule = ScheduleDefinition("heartbeat", "30 seconds", lambda data: None)
        """)

        result = runner.invoke(app, ["list", "--path", str(tmp_path), "--json"])
        assert result.exit_code == 0

        payload = json.loads(result.stdout)
        rows = {row["name"]: row for row in payload["schedules"]}
        assert set(rows) == {"sendEmail", "heartbeat"}
        assert rows["sendEmail"]["grammar"] == "cron"
        assert rows["heartbeat"]["grammar"] == "human"
        assert rows["heartbeat"]["next_run_at"] is not None
        assert payload["errors"] == []

    def test_reports_broken_files(self, tmp_path):
        _write_schedule(tmp_path, "broken.py", "raise RuntimeError('nope')\n")
        _write_schedule(tmp_path, "empty.py", "x = 1\n")

        result = runner.invoke(app, ["list", "--path", str(tmp_path), "--json"])
        assert result.exit_code == 0

        payload = json.loads(result.stdout)
        assert payload["schedules"] == []
        assert len(payload["errors"]) == 2

    def test_invalid_interval_is_listed(self, tmp_path):
        _write_schedule(tmp_path, "odd.py", """
            interval = "every blue moon"

            def perform(data):
                return None
        """)
        result = runner.invoke(app, ["list", "--path", str(tmp_path), "--json"])

        row = json.loads(result.stdout)["schedules"][0]
        assert row["grammar"] == "invalid"
        assert row["next_run_at"] is None

    def test_table_output(self, tmp_path):
        _write_schedule(tmp_path, "tick.py", """
            interval = "1 minute"

            def perform(data):
                return None
        """)
        result = runner.invoke(app, ["list", "--path", str(tmp_path)])
        assert result.exit_code == 0
        assert "tick" in result.output


# ── check ────────────────────────────────────────────────────────────


class TestCheckCommand:
    def test_disabled(self, server):
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 1
        assert "disabled" in result.output

    def test_enable(self, server):
        result = runner.invoke(app, ["check", "--enable"])
        assert result.exit_code == 0
        assert server.config["notify-keyspace-events"] == "xE"

    def test_already_enabled(self, server):
        server.config["notify-keyspace-events"] = "AKE"
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 0
        assert "enabled" in result.output

    def test_unreachable_store(self, server):
        from redis.exceptions import ConnectionError as RedisConnectionError

        server.fail_with = RedisConnectionError("connection refused")
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 1
        assert "Error" in result.output


# ── clear ────────────────────────────────────────────────────────────


class TestClearCommand:
    def test_clear_with_yes(self, server):
        server.put("r:schedules:keys:sendEmail", "instance-1")
        server.put("r:locks:schedules:sendEmail", "token")
        server.put("unrelated", "1")

        result = runner.invoke(app, ["clear", "--yes"])
        assert result.exit_code == 0
        assert "Deleted 2 key(s)" in result.output
        assert server.keys() == ["unrelated"]

    def test_clear_aborted(self, server):
        server.put("r:schedules:keys:sendEmail", "instance-1")

        result = runner.invoke(app, ["clear"], input="n\n")
        assert result.exit_code == 1
        assert "r:schedules:keys:sendEmail" in server.data
