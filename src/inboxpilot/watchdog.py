"""Stale-job recovery for the import, research and queue-based pipelines.

A job whose heartbeat is older than ``stale_minutes`` is either restarted
(one re-dispatch of the handler for its current phase, with ``resume``) or,
once it has used up ``max_retries``, moved to ``error``. The restart claim is
a conditional UPDATE on ``retry_count``, so overlapping watchdog passes
dispatch each stale job at most once.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from inboxpilot.config import Config
from inboxpilot.database import iso
from inboxpilot.jobs.runs import record_incident, run_metrics, touch_pipeline_run
from inboxpilot.jobs.state import JOB_TABLES, fail_job
from inboxpilot.models import ImportFetchJob

logger = logging.getLogger(__name__)

STALLED_MESSAGE = "Job stalled and max retries exceeded"

IMPORT_HANDLERS = {
    "scanning_inbox": "email-scan",
    "scanning_sent": "email-scan",
    "analyzing": "email-analyze",
    "fetching": "email-fetch-bodies",
    "classifying": "email-classify",
    "learning": "voice-learning",
}

RESEARCH_HANDLERS = {
    "discovering": "competitor-discover",
    "scraping": "competitor-scrape",
    "extracting": "competitor-extract-faqs",
    "deduplicating": "competitor-dedupe-faqs",
    "refining": "competitor-refine-faqs",
}


def _claim(conn: sqlite3.Connection, table: str, job: sqlite3.Row, now: str) -> bool:
    cur = conn.execute(
        f"""UPDATE {table} SET retry_count = retry_count + 1, heartbeat_at = ?
            WHERE id = ? AND status = ? AND retry_count = ?""",
        (now, job["id"], job["status"], job["retry_count"] or 0),
    )
    conn.commit()
    return cur.rowcount > 0


def _sweep(
    conn: sqlite3.Connection,
    invoker,
    config: Config,
    kind: str,
    handlers: dict[str, str],
    now: datetime | None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    table = JOB_TABLES[kind]
    cutoff = iso(now - timedelta(minutes=config.pipeline.stale_minutes))
    placeholders = ", ".join("?" for _ in handlers)
    stale = conn.execute(
        f"""SELECT * FROM {table}
            WHERE status IN ({placeholders})
              AND (heartbeat_at IS NULL OR heartbeat_at < ?)""",
        (*handlers, cutoff),
    ).fetchall()

    restarted, failed = [], []
    for job in stale:
        log_extra = {"job_id": job["id"], "job_kind": kind, "status": job["status"]}
        if (job["retry_count"] or 0) >= config.pipeline.max_retries:
            if fail_job(conn, kind, job["id"], STALLED_MESSAGE):
                failed.append(job["id"])
                logger.error("stalled job failed", extra=log_extra)
                if kind == "import":
                    conn.execute(
                        """UPDATE email_provider_configs
                           SET sync_status = 'error', sync_error = ?, updated_at = ?
                           WHERE id = ?""",
                        (STALLED_MESSAGE, iso(now), job["config_id"]),
                    )
                    conn.commit()
            continue

        if not _claim(conn, table, job, iso(now)):
            continue
        payload = {"job_id": job["id"], "workspace_id": job["workspace_id"], "resume": True}
        if kind == "import":
            payload["config_id"] = job["config_id"]
        if job["status"] == "learning":
            payload["force_refresh"] = True
        invoker.dispatch(handlers[job["status"]], payload)
        restarted.append(job["id"])
        logger.warning("restarted stale job (retry %d)", (job["retry_count"] or 0) + 1, extra=log_extra)

    return {"checked": len(stale), "restarted": restarted, "failed": failed}


def run_import_watchdog(conn: sqlite3.Connection, invoker, config: Config, now: datetime | None = None) -> dict:
    return _sweep(conn, invoker, config, "import", IMPORT_HANDLERS, now)


def run_research_watchdog(conn: sqlite3.Connection, invoker, config: Config, now: datetime | None = None) -> dict:
    return _sweep(conn, invoker, config, "research", RESEARCH_HANDLERS, now)


def run_pipeline_supervisor(
    conn: sqlite3.Connection, invoker, config: Config, now: datetime | None = None
) -> dict:
    """Resume or fail running pipeline runs whose heartbeat went quiet.

    A resumed run continues from the cursor saved in its metrics; the
    dedupe key of an already-processed page makes a repeated dispatch a
    no-op.
    """
    now = now or datetime.now(timezone.utc)
    pc = config.pipeline
    cutoff = iso(now - timedelta(minutes=pc.stale_minutes))
    stale = conn.execute(
        """SELECT * FROM pipeline_runs
           WHERE state = 'running' AND (last_heartbeat_at IS NULL OR last_heartbeat_at < ?)""",
        (cutoff,),
    ).fetchall()

    restarted, failed = [], []
    for run in stale:
        metrics = run_metrics(run)
        record_incident(
            conn, run["workspace_id"], run["id"], "pipeline_supervisor",
            f"Run stalled since {run['last_heartbeat_at']}",
            context={"metrics": metrics, "retry_count": run["retry_count"]},
            severity="warning",
            dedupe_minutes=pc.incident_dedupe_minutes,
            now=now,
        )

        if (run["retry_count"] or 0) >= pc.max_retries:
            if touch_pipeline_run(conn, run["id"], state="failed", last_error=STALLED_MESSAGE):
                failed.append(run["id"])
                logger.error("stalled run failed", extra={"run_id": run["id"]})
            continue

        cur = conn.execute(
            """UPDATE pipeline_runs SET retry_count = retry_count + 1, last_heartbeat_at = ?
               WHERE id = ? AND state = 'running' AND retry_count = ?""",
            (iso(now), run["id"], run["retry_count"] or 0),
        )
        conn.commit()
        if cur.rowcount == 0:
            continue

        if metrics.get("import_done"):
            touch_pipeline_run(conn, run["id"], state="completed")
            continue

        params = json.loads(run["params"]) if run["params"] else {}
        folder = metrics.get("last_folder") or "SENT"
        token = metrics.get("next_page_token")
        if metrics.get("last_folder") and not token and folder == "SENT":
            folder = "INBOX"
        job = ImportFetchJob(
            workspace_id=run["workspace_id"],
            run_id=run["id"],
            config_id=run["config_id"],
            folder=folder,
            page_token=token,
            cap=int(params.get("cap") or pc.import_default_cap),
            fetched_so_far=int(metrics.get("fetched_so_far") or 0),
            pages=int(metrics.get("pages") or 0),
        )
        invoker.dispatch("pipeline-worker-import", job.to_dict())
        restarted.append(run["id"])
        logger.warning("resumed stalled run", extra={"run_id": run["id"], "folder": folder})

    return {"checked": len(stale), "restarted": restarted, "failed": failed}
