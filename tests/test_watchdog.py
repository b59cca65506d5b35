"""Tests for the stale-job watchdogs, the pipeline supervisor and job cancellation."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from inboxpilot.errors import ConfigurationError, JobNotFoundError
from inboxpilot.handlers.control import cancel_job, import_watchdog
from inboxpilot.jobs.runs import get_run
from inboxpilot.jobs.state import get_job
from inboxpilot.watchdog import (
    STALLED_MESSAGE,
    run_import_watchdog,
    run_pipeline_supervisor,
    run_research_watchdog,
)
from tests.conftest import dispatched, insert_import_job, insert_pipeline_run, insert_research_job

NOW = datetime(2024, 1, 1, 0, 10, tzinfo=timezone.utc)
STALE = "2024-01-01T00:00:00+00:00"
FRESH = "2024-01-01T00:08:00+00:00"


class TestImportWatchdog:
    @pytest.mark.parametrize("status,handler", [
        ("scanning_inbox", "email-scan"),
        ("scanning_sent", "email-scan"),
        ("analyzing", "email-analyze"),
        ("fetching", "email-fetch-bodies"),
        ("classifying", "email-classify"),
    ])
    def test_restarts_stale_phase(self, db, workspace, invoker, config, status, handler):
        insert_import_job(db, status=status, heartbeat_at=STALE)

        result = run_import_watchdog(db, invoker, config, now=NOW)

        assert result == {"checked": 1, "restarted": ["job1"], "failed": []}
        assert dispatched(invoker) == [
            (handler, {"job_id": "job1", "workspace_id": "ws1", "resume": True, "config_id": "cfg1"}, 0),
        ]
        job = get_job(db, "import", "job1")
        assert job["retry_count"] == 1
        assert job["status"] == status

    def test_one_restart_per_stale_job(self, db, workspace, invoker, config):
        insert_import_job(db, status="fetching", heartbeat_at=STALE)

        run_import_watchdog(db, invoker, config, now=NOW)
        second = run_import_watchdog(db, invoker, config, now=NOW)

        assert second == {"checked": 0, "restarted": [], "failed": []}
        assert len(dispatched(invoker)) == 1

    def test_learning_restart_forces_refresh(self, db, workspace, invoker, config):
        insert_import_job(db, status="learning", heartbeat_at=STALE)

        run_import_watchdog(db, invoker, config, now=NOW)

        name, payload, _ = dispatched(invoker)[0]
        assert name == "voice-learning"
        assert payload["force_refresh"] is True

    def test_retries_exhausted_fails_without_invoking(self, db, workspace, invoker, config):
        insert_import_job(db, status="fetching", heartbeat_at=STALE, retry_count=3)

        result = run_import_watchdog(db, invoker, config, now=NOW)

        assert result["failed"] == ["job1"]
        assert dispatched(invoker) == []
        job = get_job(db, "import", "job1")
        assert job["status"] == "error"
        assert job["error_message"] == STALLED_MESSAGE
        mailbox = db.execute("SELECT * FROM email_provider_configs WHERE id = 'cfg1'").fetchone()
        assert mailbox["sync_status"] == "error"
        assert mailbox["sync_error"] == STALLED_MESSAGE

    @pytest.mark.parametrize("status,heartbeat", [
        ("fetching", FRESH),
        ("queued", STALE),
        ("completed", STALE),
        ("cancelled", STALE),
        ("error", STALE),
    ])
    def test_leaves_other_jobs_alone(self, db, workspace, invoker, config, status, heartbeat):
        insert_import_job(db, status=status, heartbeat_at=heartbeat)

        result = run_import_watchdog(db, invoker, config, now=NOW)

        assert result["checked"] == 0
        assert dispatched(invoker) == []
        assert get_job(db, "import", "job1")["retry_count"] == 0

    def test_handler_uses_wall_clock(self, db, workspace, invoker, make_ctx):
        insert_import_job(db, status="analyzing", heartbeat_at=STALE)

        result = import_watchdog(make_ctx(), {})

        assert result["success"] is True
        assert result["restarted"] == ["job1"]


class TestResearchWatchdog:
    def test_restarts_stale_research(self, db, workspace, invoker, config):
        insert_research_job(db, status="scraping", heartbeat_at=STALE)

        result = run_research_watchdog(db, invoker, config, now=NOW)

        assert result["restarted"] == ["rjob1"]
        assert dispatched(invoker) == [
            ("competitor-scrape", {"job_id": "rjob1", "workspace_id": "ws1", "resume": True}, 0),
        ]

    def test_retries_exhausted(self, db, workspace, invoker, config):
        insert_research_job(db, status="extracting", heartbeat_at=STALE, retry_count=3)

        result = run_research_watchdog(db, invoker, config, now=NOW)

        assert result["failed"] == ["rjob1"]
        assert get_job(db, "research", "rjob1")["status"] == "error"
        assert dispatched(invoker) == []


class TestPipelineSupervisor:
    def test_resumes_from_saved_cursor(self, db, workspace, invoker, config):
        run_id = insert_pipeline_run(
            db, heartbeat_at=STALE,
            metrics={"last_folder": "INBOX", "next_page_token": "p3", "fetched_so_far": 60, "pages": 3},
        )

        result = run_pipeline_supervisor(db, invoker, config, now=NOW)

        assert result["restarted"] == [run_id]
        name, payload, delay = dispatched(invoker)[0]
        assert name == "pipeline-worker-import"
        assert (payload["folder"], payload["page_token"]) == ("INBOX", "p3")
        assert (payload["fetched_so_far"], payload["pages"], payload["cap"]) == (60, 3, 100)
        assert payload["job_type"] == "IMPORT_FETCH"
        assert get_run(db, run_id)["retry_count"] == 1

    def test_finished_sent_folder_moves_to_inbox(self, db, workspace, invoker, config):
        insert_pipeline_run(
            db, heartbeat_at=STALE,
            metrics={"last_folder": "SENT", "next_page_token": None, "fetched_so_far": 40, "pages": 1},
        )

        run_pipeline_supervisor(db, invoker, config, now=NOW)

        payload = dispatched(invoker)[0][1]
        assert (payload["folder"], payload["page_token"]) == ("INBOX", None)

    def test_run_without_progress_starts_from_sent(self, db, workspace, invoker, config):
        insert_pipeline_run(db, heartbeat_at=STALE)

        run_pipeline_supervisor(db, invoker, config, now=NOW)

        payload = dispatched(invoker)[0][1]
        assert (payload["folder"], payload["page_token"], payload["fetched_so_far"]) == ("SENT", None, 0)

    def test_records_deduplicated_incident(self, db, workspace, invoker, config):
        run_id = insert_pipeline_run(db, heartbeat_at=STALE)

        run_pipeline_supervisor(db, invoker, config, now=NOW)
        run_pipeline_supervisor(db, invoker, config, now=NOW + timedelta(minutes=10))

        incidents = db.execute("SELECT * FROM pipeline_incidents").fetchall()
        assert len(incidents) == 1
        assert incidents[0]["severity"] == "warning"
        assert incidents[0]["scope"] == "pipeline_supervisor"
        assert incidents[0]["run_id"] == run_id
        assert len(dispatched(invoker)) == 2

    def test_retries_exhausted_fails_run(self, db, workspace, invoker, config):
        run_id = insert_pipeline_run(db, heartbeat_at=STALE, retry_count=3)

        result = run_pipeline_supervisor(db, invoker, config, now=NOW)

        assert result["failed"] == [run_id]
        run = get_run(db, run_id)
        assert run["state"] == "failed"
        assert run["last_error"] == STALLED_MESSAGE
        assert dispatched(invoker) == []

    def test_finished_import_is_completed(self, db, workspace, invoker, config):
        run_id = insert_pipeline_run(db, heartbeat_at=STALE, metrics={"import_done": True, "fetched_so_far": 100})

        result = run_pipeline_supervisor(db, invoker, config, now=NOW)

        assert result["restarted"] == []
        assert get_run(db, run_id)["state"] == "completed"
        assert dispatched(invoker) == []

    def test_fresh_and_finished_runs_untouched(self, db, workspace, invoker, config):
        insert_pipeline_run(db, heartbeat_at=FRESH)
        insert_pipeline_run(db, config_id="cfg2", state="completed", heartbeat_at=STALE)

        result = run_pipeline_supervisor(db, invoker, config, now=NOW)

        assert result["checked"] == 0
        assert db.execute("SELECT COUNT(*) AS cnt FROM pipeline_incidents").fetchone()["cnt"] == 0


class TestCancelJob:
    def test_cancels_import_and_resets_mailbox(self, db, workspace, make_ctx):
        insert_import_job(db, status="fetching")

        result = cancel_job(make_ctx(), {"job_id": "job1", "workspace_id": "ws1"})

        assert result == {"success": True, "cancelled": True, "job_id": "job1"}
        assert get_job(db, "import", "job1")["status"] == "cancelled"
        mailbox = db.execute("SELECT * FROM email_provider_configs WHERE id = 'cfg1'").fetchone()
        assert (mailbox["sync_status"], mailbox["sync_stage"]) == ("idle", "cancelled")

    def test_finished_job_is_not_cancelled(self, db, workspace, make_ctx):
        insert_import_job(db, status="completed")
        assert cancel_job(make_ctx(), {"job_id": "job1"})["cancelled"] is False
        assert get_job(db, "import", "job1")["status"] == "completed"

    def test_cancels_research(self, db, workspace, make_ctx):
        insert_research_job(db, status="scraping")
        assert cancel_job(make_ctx(), {"job_id": "rjob1", "kind": "research"})["cancelled"] is True

    def test_other_workspace_cannot_cancel(self, db, workspace, make_ctx):
        insert_import_job(db, status="fetching")
        with pytest.raises(JobNotFoundError):
            cancel_job(make_ctx(), {"job_id": "job1", "workspace_id": "ws2"})
        assert get_job(db, "import", "job1")["status"] == "fetching"

    def test_unknown_job(self, db, workspace, make_ctx):
        with pytest.raises(JobNotFoundError):
            cancel_job(make_ctx(), {"job_id": "missing"})

    def test_unknown_kind(self, db, workspace, make_ctx):
        with pytest.raises(ConfigurationError):
            cancel_job(make_ctx(), {"job_id": "job1", "kind": "export"})


def test_cancelled_job_skips_pending_phase(db, workspace, make_ctx):
    from inboxpilot.handlers.email_import import email_analyze

    insert_import_job(db, status="analyzing")
    cancel_job(make_ctx(), {"job_id": "job1"})

    result = email_analyze(make_ctx(), {"job_id": "job1", "workspace_id": "ws1", "config_id": "cfg1"})

    assert result == {"success": True, "cancelled": True, "reason": "cancelled"}
    assert json.loads(get_job(db, "import", "job1")["checkpoint"])["phase"] == "inbox"
