"""Tests for CLI commands."""

import json
import sqlite3
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from inboxpilot.cli import app
from inboxpilot.database import init_db
from inboxpilot.triage.corrections import record_correction

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a temporary database and leave logging alone."""
    db_path = tmp_path / "cli.db"
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("INBOXPILOT_CONFIG", raising=False)
    monkeypatch.setenv("INBOXPILOT_DB", str(db_path))
    monkeypatch.setattr("inboxpilot.observability.configure_logging", lambda **kwargs: None)
    return db_path


@pytest.fixture
def mock_invoker(monkeypatch):
    mock = MagicMock()
    monkeypatch.setattr("inboxpilot.invoker.invoker", mock)
    return mock


def _open(db_path):
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    init_db(conn)
    return conn


def test_help(cli_env):
    """CLI shows help without error."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "email assistant" in result.output.lower()


class TestDbCommands:
    def test_stats_on_fresh_database(self, cli_env):
        result = runner.invoke(app, ["db", "--stats"])
        assert result.exit_code == 0
        assert "Table row counts:" in result.output
        assert "email_import_jobs" in result.output
        assert cli_env.exists()

    def test_reset_wipes_rows(self, cli_env):
        conn = _open(cli_env)
        conn.execute("INSERT INTO workspaces (id, name) VALUES ('ws1', 'Flow Plumbing')")
        conn.commit()
        conn.close()

        result = runner.invoke(app, ["db", "--reset"])

        assert result.exit_code == 0
        assert "Database reset" in result.output
        conn = _open(cli_env)
        assert conn.execute("SELECT COUNT(*) AS cnt FROM workspaces").fetchone()["cnt"] == 0
        conn.close()

    def test_migrate(self, cli_env):
        _open(cli_env).close()
        result = runner.invoke(app, ["db", "--migrate"])
        assert result.exit_code == 0
        assert "Schema migrations applied." in result.output

    def test_no_flags_shows_help(self, cli_env):
        result = runner.invoke(app, ["db"])
        assert result.exit_code == 0
        assert "--stats" in result.output


class TestOperatorCommands:
    def test_watchdog_runs_every_pass(self, cli_env, mock_invoker):
        mock_invoker.invoke.return_value = {"success": True, "checked": 2, "restarted": ["job1"], "failed": []}

        result = runner.invoke(app, ["watchdog"])

        assert result.exit_code == 0
        names = [c.args[0] for c in mock_invoker.invoke.call_args_list]
        assert names == ["import-watchdog", "competitor-research-watchdog", "pipeline-supervisor"]
        assert "import-watchdog: checked 2, restarted 1, failed 0" in result.output
        mock_invoker.shutdown.assert_called_once_with(wait=True)

    def test_bootstrap_rules(self, cli_env, mock_invoker):
        mock_invoker.invoke.return_value = {
            "success": True,
            "total_domains_analyzed": 4,
            "total_suggestions": 1,
            "rules_created": 1,
            "suggestions": [{
                "sender_domain": "supplier.com", "suggested_bucket": "auto_handled",
                "suggested_classification": "supplier_notification", "confidence": 92, "reply_rate": 0.0,
            }],
        }

        result = runner.invoke(app, ["bootstrap-rules", "ws1", "--min-emails", "3"])

        assert result.exit_code == 0
        mock_invoker.invoke.assert_called_once_with(
            "bootstrap-sender-rules", {"workspace_id": "ws1", "min_email_count": 3},
        )
        assert "Analyzed 4 domains, 1 suggestions, 1 rules created." in result.output
        assert "supplier.com" in result.output

    def test_drift_prints_result(self, cli_env, mock_invoker):
        mock_invoker.invoke.return_value = {"success": True, "drift_score": 0.1, "refresh_triggered": False}

        result = runner.invoke(app, ["drift", "ws1"])

        assert result.exit_code == 0
        assert json.loads(result.output)["drift_score"] == 0.1

    def test_draft_with_verification(self, cli_env, mock_invoker):
        mock_invoker.invoke.side_effect = [
            {"success": True, "draft_id": 7, "draft": "Hiya, Tuesday works. Cheers, Sam", "confidence": 0.75},
            {"success": True, "status": "failed", "confidence_score": 0.4, "issues": [
                {"type": "hallucination", "severity": "critical", "description": "Quotes a price not in the FAQs"},
            ]},
        ]

        result = runner.invoke(app, ["draft", "ws1", "12", "--verify"])

        assert result.exit_code == 0
        assert [c.args for c in mock_invoker.invoke.call_args_list] == [
            ("ai-draft", {"workspace_id": "ws1", "conversation_id": 12}),
            ("draft-verify", {"workspace_id": "ws1", "draft_id": 7}),
        ]
        assert "Hiya, Tuesday works." in result.output
        assert "[draft #7, confidence 0.75]" in result.output
        assert "verification: failed (0.40)" in result.output
        assert "[critical] hallucination: Quotes a price" in result.output
        mock_invoker.shutdown.assert_called_once_with(wait=True)

    def test_serve_starts_uvicorn(self, cli_env, monkeypatch):
        run = MagicMock()
        monkeypatch.setattr("uvicorn.run", run)

        result = runner.invoke(app, ["serve", "--port", "9000"])

        assert result.exit_code == 0
        assert run.call_args.args == ("inboxpilot.web.app:create_app",)
        assert run.call_args.kwargs["port"] == 9000
        assert run.call_args.kwargs["factory"] is True


class TestCorrectionsCommand:
    def _seed(self, db_path):
        conn = _open(db_path)
        conn.execute("INSERT INTO workspaces (id, name) VALUES ('ws1', 'Flow Plumbing')")
        conv = conn.execute(
            """INSERT INTO conversations
               (workspace_id, thread_id, sender_email, sender_domain, email_classification, decision_bucket)
               VALUES ('ws1', 't1', 'jo@client.com', 'client.com', 'inquiry', 'quick_win')"""
        ).lastrowid
        conn.commit()
        record_correction(conn, "ws1", conv, "quote", "deep_work", requires_reply=True)
        conn.close()

    def test_lists_corrections(self, cli_env):
        self._seed(cli_env)
        result = runner.invoke(app, ["corrections", "ws1"])
        assert result.exit_code == 0
        assert "jo@client.com: quick_win -> deep_work (quote)" in result.output

    def test_stats(self, cli_env):
        self._seed(cli_env)
        result = runner.invoke(app, ["corrections", "ws1", "--stats"])
        assert result.exit_code == 0
        assert "quick_win: 1 corrections / 1 classified" in result.output

    def test_empty(self, cli_env):
        assert "No corrections found." in runner.invoke(app, ["corrections", "ws1"]).output
        assert "No corrections to analyze." in runner.invoke(app, ["corrections", "ws1", "--stats"]).output
