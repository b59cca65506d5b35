"""Job status transitions, heartbeats and cooperative cancellation.

Both long-running job tables (``email_import_jobs`` and
``competitor_research_jobs``) share one lifecycle: a fixed forward phase
order plus absorbing ``error`` / ``cancelled`` states.  Every status write goes
through :func:`advance_status`, a compare-and-set UPDATE keyed on the status
read just before, so two overlapping invocations cannot both move a job and
nothing can move it backward.
"""

from __future__ import annotations

import logging
import sqlite3

from inboxpilot.database import utcnow
from inboxpilot.errors import InvalidTransitionError, JobNotFoundError
from inboxpilot.models import IMPORT_PHASES, RESEARCH_PHASES, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

JOB_TABLES = {
    "import": "email_import_jobs",
    "research": "competitor_research_jobs",
}

_PHASES = {
    "import": [s.value for s in IMPORT_PHASES],
    "research": [s.value for s in RESEARCH_PHASES],
}

# Columns a caller may set alongside a status change
_UPDATABLE = {
    "checkpoint", "error_message", "started_at", "completed_at",
    "inbox_emails_scanned", "sent_emails_scanned", "total_threads_found",
    "conversation_threads", "bodies_fetched", "messages_created",
    "conversations_classified", "sites_discovered", "sites_approved",
    "sites_scraped", "pages_scraped", "faqs_extracted", "faqs_after_dedup",
    "faqs_refined", "faqs_added", "current_scraping_domain", "retry_count",
}


def _table(kind: str) -> str:
    try:
        return JOB_TABLES[kind]
    except KeyError:
        raise ValueError(f"Unknown job kind: {kind!r}") from None


def phase_rank(kind: str, status: str) -> int:
    """Position of ``status`` in the phase order. Terminal states rank highest."""
    phases = _PHASES[kind]
    if status in phases:
        return phases.index(status)
    if status in TERMINAL_STATUSES:
        return len(phases)
    raise ValueError(f"Unknown {kind} status: {status!r}")


def get_job(conn: sqlite3.Connection, kind: str, job_id: str) -> sqlite3.Row | None:
    return conn.execute(
        f"SELECT * FROM {_table(kind)} WHERE id = ?", (job_id,)
    ).fetchone()


def load_active_job(conn: sqlite3.Connection, kind: str, job_id: str) -> sqlite3.Row | None:
    """Return the job row, or None when it is missing or already terminal.

    Handlers call this first; None means "stop without writing".
    """
    row = get_job(conn, kind, job_id)
    if row is None or row["status"] in TERMINAL_STATUSES:
        return None
    return row


def _set_clause(fields: dict) -> tuple[str, list]:
    unknown = set(fields) - _UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update job columns: {sorted(unknown)}")
    parts = [f"{col} = ?" for col in fields]
    return ", ".join(parts), list(fields.values())


def advance_status(
    conn: sqlite3.Connection,
    kind: str,
    job_id: str,
    new_status: str,
    **fields,
) -> bool:
    """Move a job to ``new_status`` (or keep it there) and write ``fields``.

    Returns False when the job is missing, already terminal, or was changed by a
    concurrent writer between the read and the update. Raises
    InvalidTransitionError for a backward phase move.
    """
    table = _table(kind)
    new_status = getattr(new_status, "value", new_status)
    row = get_job(conn, kind, job_id)
    if row is None:
        return False

    current = row["status"]
    if current in TERMINAL_STATUSES:
        if current != new_status:
            logger.info(
                "ignoring %s -> %s on terminal job", current, new_status,
                extra={"job_id": job_id, "job_kind": kind},
            )
        return False

    if phase_rank(kind, new_status) < phase_rank(kind, current):
        raise InvalidTransitionError(
            f"{kind} job {job_id}: cannot move from {current} back to {new_status}"
        )

    now = utcnow()
    set_sql, values = _set_clause(fields)
    sql = f"UPDATE {table} SET status = ?, heartbeat_at = ?"
    params: list = [new_status, now]
    if kind == "import":
        sql += ", updated_at = ?"
        params.append(now)
    if set_sql:
        sql += ", " + set_sql
        params.extend(values)
    sql += " WHERE id = ? AND status = ?"
    params.extend([job_id, current])

    cur = conn.execute(sql, params)
    conn.commit()
    if cur.rowcount == 0:
        logger.warning(
            "status changed concurrently, %s -> %s not applied", current, new_status,
            extra={"job_id": job_id, "job_kind": kind},
        )
        return False
    if new_status != current:
        logger.info(
            "job %s: %s -> %s", job_id, current, new_status,
            extra={"job_id": job_id, "job_kind": kind},
        )
    return True


def fail_job(conn: sqlite3.Connection, kind: str, job_id: str, message: str) -> bool:
    """Move a job to the absorbing ``error`` state."""
    return advance_status(
        conn, kind, job_id, "error",
        error_message=message[:1000], completed_at=utcnow(),
    )


def heartbeat(conn: sqlite3.Connection, kind: str, job_id: str, **fields) -> None:
    """Refresh ``heartbeat_at`` and optionally write progress counters.

    Terminal jobs are left untouched.
    """
    table = _table(kind)
    set_sql, values = _set_clause(fields)
    sql = f"UPDATE {table} SET heartbeat_at = ?"
    params: list = [utcnow()]
    if set_sql:
        sql += ", " + set_sql
        params.extend(values)
    sql += " WHERE id = ? AND status NOT IN ('completed', 'error', 'cancelled')"
    params.append(job_id)
    conn.execute(sql, params)
    conn.commit()


def cancel_job(conn: sqlite3.Connection, kind: str, job_id: str) -> bool:
    """Cancel a single non-terminal job. Raises JobNotFoundError if it does not exist."""
    if get_job(conn, kind, job_id) is None:
        raise JobNotFoundError(f"{kind} job {job_id} not found")
    cur = conn.execute(
        f"""UPDATE {_table(kind)} SET status = 'cancelled', completed_at = ?
            WHERE id = ? AND status NOT IN ('completed', 'error', 'cancelled')""",
        (utcnow(), job_id),
    )
    conn.commit()
    return cur.rowcount > 0


def cancel_active_jobs(
    conn: sqlite3.Connection, kind: str, workspace_id: str, config_id: str | None = None
) -> int:
    """Cancel every non-terminal job for a workspace (and mailbox, for imports)."""
    sql = (
        f"UPDATE {_table(kind)} SET status = 'cancelled', completed_at = ? "
        "WHERE workspace_id = ? AND status NOT IN ('completed', 'error', 'cancelled')"
    )
    params: list = [utcnow(), workspace_id]
    if config_id is not None:
        sql += " AND config_id = ?"
        params.append(config_id)
    cur = conn.execute(sql, params)
    conn.commit()
    return cur.rowcount
