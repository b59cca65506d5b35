"""Pipeline runs, incidents and the job audit trail."""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from inboxpilot.database import iso, utcnow

logger = logging.getLogger(__name__)

TERMINAL_RUN_STATES = ("completed", "failed")


def compute_dedupe_key(job_type: str, payload: dict) -> str:
    """Deterministic key for a job: sha256 of the type and sorted payload, 32 hex chars."""
    key_data = f"{job_type}:{json.dumps(payload, sort_keys=True)}"
    return hashlib.sha256(key_data.encode()).hexdigest()[:32]


def get_run(conn: sqlite3.Connection, run_id: int) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,)).fetchone()


def run_metrics(row: sqlite3.Row | None) -> dict:
    if row is None or not row["metrics"]:
        return {}
    return json.loads(row["metrics"])


def find_running_run(
    conn: sqlite3.Connection, workspace_id: str, config_id: str, channel: str = "email"
) -> sqlite3.Row | None:
    return conn.execute(
        """SELECT * FROM pipeline_runs
           WHERE workspace_id = ? AND config_id = ? AND channel = ? AND state = 'running'""",
        (workspace_id, config_id, channel),
    ).fetchone()


def create_run(
    conn: sqlite3.Connection,
    workspace_id: str,
    config_id: str,
    channel: str = "email",
    mode: str = "onboarding",
    params: dict | None = None,
) -> tuple[int, bool]:
    """Claim the single running run for a mailbox.

    Returns ``(run_id, created)``. When a run is already running the partial
    unique index rejects the insert and the existing run id is returned.
    """
    now = utcnow()
    try:
        cur = conn.execute(
            """INSERT INTO pipeline_runs
               (workspace_id, config_id, channel, mode, state, params, metrics,
                started_at, last_heartbeat_at)
               VALUES (?, ?, ?, ?, 'running', ?, '{}', ?, ?)""",
            (workspace_id, config_id, channel, mode, json.dumps(params or {}), now, now),
        )
        conn.commit()
        return cur.lastrowid, True
    except sqlite3.IntegrityError:
        conn.rollback()
        existing = find_running_run(conn, workspace_id, config_id, channel)
        if existing is None:
            raise
        return existing["id"], False


def touch_pipeline_run(
    conn: sqlite3.Connection,
    run_id: int,
    metrics_patch: dict | None = None,
    state: str | None = None,
    last_error: str | None = None,
    increment_retry: bool = False,
) -> bool:
    """Heartbeat a run, merging ``metrics_patch`` into its metrics.

    Completed and failed runs are never modified. Returns False if nothing
    was written.
    """
    row = get_run(conn, run_id)
    if row is None or row["state"] in TERMINAL_RUN_STATES:
        return False

    metrics = run_metrics(row)
    if metrics_patch:
        metrics.update(metrics_patch)

    now = utcnow()
    sql = "UPDATE pipeline_runs SET metrics = ?, last_heartbeat_at = ?"
    params: list = [json.dumps(metrics), now]
    if state is not None:
        sql += ", state = ?"
        params.append(state)
        if state in TERMINAL_RUN_STATES:
            sql += ", completed_at = ?"
            params.append(now)
    if last_error is not None:
        sql += ", last_error = ?"
        params.append(last_error[:1000])
    if increment_retry:
        sql += ", retry_count = retry_count + 1"
    sql += " WHERE id = ? AND state NOT IN ('completed', 'failed')"
    params.append(run_id)

    cur = conn.execute(sql, params)
    conn.commit()
    return cur.rowcount > 0


def record_incident(
    conn: sqlite3.Connection,
    workspace_id: str | None,
    run_id: int | None,
    scope: str,
    error: str,
    context: dict | None = None,
    severity: str = "error",
    dedupe_minutes: int | None = None,
    now: datetime | None = None,
) -> int | None:
    """Insert an incident row.

    With ``dedupe_minutes`` set, an open incident for the same run and scope
    created inside that window suppresses the insert and None is returned.
    """
    now = now or datetime.now(timezone.utc)
    if dedupe_minutes:
        cutoff = iso(now - timedelta(minutes=dedupe_minutes))
        existing = conn.execute(
            """SELECT id FROM pipeline_incidents
               WHERE run_id IS ? AND scope = ? AND resolved_at IS NULL AND created_at >= ?""",
            (run_id, scope, cutoff),
        ).fetchone()
        if existing:
            return None

    cur = conn.execute(
        """INSERT INTO pipeline_incidents
           (workspace_id, run_id, severity, scope, error, context, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, run_id, severity, scope, error, json.dumps(context or {}), iso(now)),
    )
    conn.commit()
    logger.warning(
        "incident recorded: %s", error,
        extra={"run_id": run_id, "scope": scope, "severity": severity},
    )
    return cur.lastrowid


def audit_job(
    conn: sqlite3.Connection,
    workspace_id: str | None,
    run_id: int | None,
    job_type: str,
    dedupe_key: str,
    payload: dict,
    outcome: str,
    error: str | None = None,
    attempts: int = 0,
) -> None:
    conn.execute(
        """INSERT INTO pipeline_job_audit
           (workspace_id, run_id, job_type, dedupe_key, job_payload, outcome,
            error, attempts, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, run_id, job_type, dedupe_key, json.dumps(payload),
         outcome, error, attempts, utcnow()),
    )
    conn.commit()


def already_processed(conn: sqlite3.Connection, dedupe_key: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM pipeline_job_audit WHERE dedupe_key = ? AND outcome = 'processed' LIMIT 1",
        (dedupe_key,),
    ).fetchone()
    return row is not None
