"""Tests for the command line entry point."""
from __future__ import annotations

import json

import pytest

from treasury_ingest import runner
from treasury_ingest.models import STATUS_FAILED, STATUS_LOCK_DENIED, STATUS_SUCCEEDED, JobResult


class TestParseArgs:
    def test_scan(self):
        options = runner.parse_args(["--verbose", "scan", "hkex"])
        assert options.verbose is True
        assert (options.command, options.source) == ("scan", "hkex")

    def test_serve_defaults(self):
        options = runner.parse_args(["serve"])
        assert (options.host, options.port) == ("127.0.0.1", 8000)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            runner.parse_args([])

    def test_unknown_source(self):
        with pytest.raises(SystemExit):
            runner.parse_args(["scan", "lse"])


class TestMain:
    @pytest.fixture
    def jobs(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TREASURY_INGEST_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
        monkeypatch.setenv("TREASURY_INGEST_ENV_FILE", str(tmp_path / "missing.env"))
        state = {"status": STATUS_SUCCEEDED, "names": []}

        class Job:
            def __init__(self, name):
                self.name = name

            def run(self, config=None):
                state["names"].append(self.name)
                return JobResult(job=self.name, status=state["status"])

        monkeypatch.setattr(runner, "create_job", lambda name, settings, engine: Job(name))
        monkeypatch.setattr(runner, "configure_logging", lambda *args, **kwargs: None)
        return state

    @pytest.mark.parametrize(
        "status, code",
        [(STATUS_SUCCEEDED, 0), (STATUS_LOCK_DENIED, 0), (STATUS_FAILED, 1)],
    )
    def test_exit_codes(self, jobs, capsys, status, code):
        jobs["status"] = status
        assert runner.main(["scan", "sec"]) == code
        assert jobs["names"] == ["scan-sec-filings"]
        assert json.loads(capsys.readouterr().out)["status"] == status

    def test_market_data(self, jobs, capsys):
        assert runner.main(["market-data"]) == 0
        assert jobs["names"] == ["update-market-data"]

    def test_health(self, jobs, capsys):
        assert runner.main(["health"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["health"]["total_scrapers"] == 3
        assert payload["recommendations"] == []
