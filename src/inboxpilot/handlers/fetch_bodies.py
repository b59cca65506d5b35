"""Fetch message bodies for queued threads and turn them into conversations."""

from __future__ import annotations

import logging
import sqlite3

import httpx

from inboxpilot.database import utcnow
from inboxpilot.errors import TRANSIENT_ERRORS, AuthError, HttpError, RateLimitError
from inboxpilot.handlers.base import (
    HandlerContext,
    cancelled,
    connected_addresses,
    continue_later,
    job_phase,
    load_provider_config,
    past_phase,
    require,
    update_provider_config,
)
from inboxpilot.jobs.state import advance_status, heartbeat, load_active_job
from inboxpilot.mail.ingest import ingest_message
from inboxpilot.mail.parse import extract_body

logger = logging.getLogger(__name__)


def _fetch_counts(conn: sqlite3.Connection, job_id: str) -> dict:
    row = conn.execute(
        """SELECT SUM(has_body = 1) AS bodies, SUM(status = 'processed') AS processed,
                  SUM(status = 'queued_for_fetch') AS remaining
           FROM email_import_queue WHERE job_id = ?""",
        (job_id,),
    ).fetchone()
    return {
        "bodies_fetched": row["bodies"] or 0,
        "messages_created": row["processed"] or 0,
        "remaining": row["remaining"] or 0,
    }


@job_phase("import", "email-fetch-bodies")
def email_fetch_bodies(ctx: HandlerContext, payload: dict) -> dict:
    """Fetch one batch of bodies, newest first, and attach them to conversations."""
    require(payload, "job_id")
    conn = ctx.conn
    job_id = payload["job_id"]
    job = load_active_job(conn, "import", job_id)
    if job is None:
        return cancelled()
    if past_phase("import", job, "fetching"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "import", job_id, "fetching"):
        return cancelled("superseded")

    provider_config = load_provider_config(conn, job["config_id"])
    own = connected_addresses(provider_config)
    rows = conn.execute(
        """SELECT * FROM email_import_queue
           WHERE job_id = ? AND status = 'queued_for_fetch'
           ORDER BY received_at DESC
           LIMIT ?""",
        (job_id, ctx.config.pipeline.fetch_batch_size),
    ).fetchall()

    fetched = failed = 0
    retry_in = 0
    client = ctx.mail_client(provider_config)
    try:
        for row in rows:
            if not ctx.time_left():
                break
            try:
                message = client.get_message(row["external_id"])
            except TRANSIENT_ERRORS as e:
                retry_in = e.retry_after_seconds if isinstance(e, RateLimitError) else 30
                logger.warning("body fetch rate limited: %s", e, extra={"job_id": job_id})
                break
            except AuthError:
                raise
            except (HttpError, httpx.HTTPError) as e:
                conn.execute(
                    "UPDATE email_import_queue SET status = 'error', error_message = ? WHERE id = ?",
                    (str(e)[:500], row["id"]),
                )
                conn.commit()
                failed += 1
                continue

            body = extract_body(message)
            now = utcnow()
            conn.execute(
                """UPDATE email_import_queue
                   SET body = ?, has_body = ?, status = 'fetched', fetched_at = ?
                   WHERE id = ?""",
                (body, bool(body), now, row["id"]),
            )
            ingest_message(conn, job["workspace_id"], row, body, own)
            conn.execute(
                "UPDATE email_import_queue SET status = 'processed', processed_at = ? WHERE id = ?",
                (now, row["id"]),
            )
            conn.commit()
            fetched += 1
    finally:
        client.close()

    counts = _fetch_counts(conn, job_id)
    remaining = counts.pop("remaining")
    heartbeat(conn, "import", job_id, **counts)

    if remaining:
        continue_later(
            ctx, "email-fetch-bodies",
            {**payload, "config_id": job["config_id"], "workspace_id": job["workspace_id"]},
            delay_seconds=retry_in,
            stalled=bool(retry_in) and fetched == 0 and failed == 0,
        )
        return {"success": True, "fetched": fetched, "failed": failed,
                "remaining": remaining, "continuing": True, **counts}

    conversations = conn.execute(
        "SELECT COUNT(*) AS cnt FROM conversations WHERE workspace_id = ?",
        (job["workspace_id"],),
    ).fetchone()["cnt"]
    if not advance_status(conn, "import", job_id, "classifying"):
        return cancelled("superseded")
    update_provider_config(conn, job["config_id"], sync_stage="classifying", threads_linked=conversations)
    ctx.dispatch("email-classify", {"workspace_id": job["workspace_id"], "job_id": job_id})
    return {"success": True, "fetched": fetched, "failed": failed,
            "remaining": 0, "continuing": False, **counts}
