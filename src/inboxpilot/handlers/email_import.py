"""Mailbox import: start, scan INBOX and SENT, analyse threads."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid

from inboxpilot.database import utcnow
from inboxpilot.errors import TRANSIENT_ERRORS, ConfigurationError, InvalidTransitionError
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
from inboxpilot.jobs.state import advance_status, cancel_active_jobs, load_active_job
from inboxpilot.mail.ingest import upsert_queue_rows
from inboxpilot.triage.rules import noise_reason

logger = logging.getLogger(__name__)

FOLDERS = {"inbox": ("INBOX", "inbound"), "sent": ("SENT", "outbound")}
SCAN_STATUS = {"inbox": "scanning_inbox", "sent": "scanning_sent", "done": "scanning_sent"}


def start_email_import(ctx: HandlerContext, payload: dict) -> dict:
    """Cancel any running import for the mailbox, queue a new job and start scanning."""
    require(payload, "workspace_id", "config_id")
    conn = ctx.conn
    workspace_id, config_id = payload["workspace_id"], payload["config_id"]

    provider_config = load_provider_config(conn, config_id)
    if provider_config["workspace_id"] != workspace_id:
        raise ConfigurationError("Email provider config belongs to another workspace")

    superseded = cancel_active_jobs(conn, "import", workspace_id, config_id)
    job_id = uuid.uuid4().hex
    now = utcnow()
    try:
        conn.execute(
            """INSERT INTO email_import_jobs
               (id, workspace_id, config_id, status, checkpoint, heartbeat_at,
                started_at, created_at, updated_at)
               VALUES (?, ?, ?, 'queued', ?, ?, ?, ?, ?)""",
            (job_id, workspace_id, config_id,
             json.dumps({"phase": "inbox", "page_token": None}), now, now, now, now),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise InvalidTransitionError("Another import for this mailbox started concurrently") from None

    update_provider_config(
        conn, config_id,
        sync_status="syncing", sync_stage="queued", sync_error=None,
        sync_started_at=now, sync_completed_at=None,
    )
    logger.info(
        "import queued (%d superseded)", superseded,
        extra={"job_id": job_id, "workspace_id": workspace_id},
    )
    ctx.dispatch("email-scan", {"job_id": job_id, "config_id": config_id, "workspace_id": workspace_id})
    return {"success": True, "job_id": job_id, "cancelled_jobs": superseded}


def _scan_counts(conn: sqlite3.Connection, job_id: str) -> dict:
    row = conn.execute(
        """SELECT SUM(direction = 'inbound') AS inbound, SUM(direction = 'outbound') AS outbound
           FROM email_import_queue WHERE job_id = ?""",
        (job_id,),
    ).fetchone()
    return {
        "inbox_emails_scanned": row["inbound"] or 0,
        "sent_emails_scanned": row["outbound"] or 0,
    }


@job_phase("import", "email-scan")
def email_scan(ctx: HandlerContext, payload: dict) -> dict:
    """Page through INBOX then SENT, queueing message headers.

    Progress lives in the job checkpoint ``{phase, page_token}``, written after
    every page, so a re-dispatch resumes at the next unread page.
    """
    require(payload, "job_id")
    conn = ctx.conn
    job_id = payload["job_id"]
    job = load_active_job(conn, "import", job_id)
    if job is None:
        return cancelled()
    if past_phase("import", job, "scanning_sent"):
        return {"success": True, "skipped": True, "status": job["status"]}

    provider_config = load_provider_config(conn, job["config_id"])
    checkpoint = json.loads(job["checkpoint"] or "{}")
    phase = checkpoint.get("phase") or "inbox"
    page_token = checkpoint.get("page_token")
    pages = 0
    rate_limited = False

    if phase != "done":
        if not advance_status(conn, "import", job_id, SCAN_STATUS[phase]):
            return cancelled("superseded")
        update_provider_config(
            conn, job["config_id"],
            sync_stage="fetching_inbox" if phase == "inbox" else "fetching_sent",
        )
        client = ctx.mail_client(provider_config)
        try:
            while phase != "done" and ctx.time_left():
                folder, direction = FOLDERS[phase]
                try:
                    page = client.list_messages(
                        folder, page_token, limit=ctx.config.mail.scan_page_size,
                    )
                except TRANSIENT_ERRORS as e:
                    logger.warning("scan rate limited: %s", e, extra={"job_id": job_id})
                    rate_limited = True
                    break

                upsert_queue_rows(
                    conn, job["workspace_id"], job["config_id"], job_id,
                    page["records"], direction,
                )
                pages += 1

                if page["next_page_token"]:
                    page_token = page["next_page_token"]
                elif phase == "inbox":
                    phase, page_token = "sent", None
                else:
                    phase, page_token = "done", None

                counts = _scan_counts(conn, job_id)
                if not advance_status(
                    conn, "import", job_id, SCAN_STATUS[phase],
                    checkpoint=json.dumps({"phase": phase, "page_token": page_token}),
                    **counts,
                ):
                    return cancelled("superseded")
                update_provider_config(
                    conn, job["config_id"],
                    inbound_emails_found=counts["inbox_emails_scanned"],
                    outbound_emails_found=counts["sent_emails_scanned"],
                )
                ctx.sleep(ctx.config.mail.request_delay_seconds)
        finally:
            client.close()

    counts = _scan_counts(conn, job_id)
    if phase != "done":
        continue_later(
            ctx, "email-scan",
            {**payload, "config_id": job["config_id"], "workspace_id": job["workspace_id"]},
            delay_seconds=30 if rate_limited else 0,
            stalled=rate_limited and pages == 0,
        )
        return {"success": True, "pages": pages, "phase": phase, "continuing": True,
                "rate_limited": rate_limited, **counts}

    if not advance_status(conn, "import", job_id, "analyzing"):
        return cancelled("superseded")
    update_provider_config(conn, job["config_id"], sync_stage="analyzing")
    ctx.dispatch(
        "email-analyze",
        {"job_id": job_id, "config_id": job["config_id"], "workspace_id": job["workspace_id"]},
    )
    return {"success": True, "pages": pages, "phase": "done", "continuing": False, **counts}


@job_phase("import", "email-analyze")
def email_analyze(ctx: HandlerContext, payload: dict) -> dict:
    """Mark noise, rebuild per-thread statistics and queue bodies worth fetching."""
    require(payload, "job_id")
    conn = ctx.conn
    job_id = payload["job_id"]
    job = load_active_job(conn, "import", job_id)
    if job is None:
        return cancelled()
    if past_phase("import", job, "analyzing"):
        return {"success": True, "skipped": True, "status": job["status"]}
    if not advance_status(conn, "import", job_id, "analyzing"):
        return cancelled("superseded")

    own = connected_addresses(load_provider_config(conn, job["config_id"]))

    noise_updates = []
    for row in conn.execute(
        "SELECT id, from_email, direction FROM email_import_queue WHERE job_id = ? AND status = 'scanned'",
        (job_id,),
    ).fetchall():
        sender = (row["from_email"] or "").lower()
        reason = noise_reason(sender)
        if reason is None and row["direction"] == "inbound" and sender in own:
            reason = "self_sent"
        if reason is not None:
            noise_updates.append((reason, row["id"]))
    conn.executemany(
        "UPDATE email_import_queue SET is_noise = 1, noise_reason = ?, status = 'skipped' WHERE id = ?",
        noise_updates,
    )

    conn.execute("DELETE FROM email_thread_analysis WHERE job_id = ?", (job_id,))
    conn.execute(
        """INSERT INTO email_thread_analysis
           (job_id, thread_id, inbound_count, outbound_count, total_count,
            is_conversation, is_noise_thread, needs_body_fetch)
           SELECT ?, thread_id,
                  SUM(direction = 'inbound'),
                  SUM(direction = 'outbound'),
                  COUNT(*),
                  SUM(direction = 'inbound' AND is_noise = 0) > 0 AND SUM(direction = 'outbound') > 0,
                  SUM(is_noise = 0) = 0,
                  SUM(direction = 'inbound' AND is_noise = 0) > 0
           FROM email_import_queue
           WHERE job_id = ?
           GROUP BY thread_id""",
        (job_id, job_id),
    )
    conn.execute(
        """UPDATE email_import_queue SET status = 'queued_for_fetch'
           WHERE job_id = ? AND status = 'scanned' AND is_noise = 0
             AND thread_id IN (SELECT thread_id FROM email_thread_analysis
                               WHERE job_id = ? AND needs_body_fetch = 1)""",
        (job_id, job_id),
    )
    # Outbound-only threads (cold outreach, forwards) are not conversations
    conn.execute(
        "UPDATE email_import_queue SET status = 'skipped' WHERE job_id = ? AND status = 'scanned'",
        (job_id,),
    )
    conn.commit()

    stats = conn.execute(
        """SELECT COUNT(*) AS threads, COALESCE(SUM(is_conversation), 0) AS conversations,
                  COALESCE(SUM(needs_body_fetch), 0) AS to_fetch
           FROM email_thread_analysis WHERE job_id = ?""",
        (job_id,),
    ).fetchone()
    queued = conn.execute(
        "SELECT COUNT(*) AS cnt FROM email_import_queue WHERE job_id = ? AND status = 'queued_for_fetch'",
        (job_id,),
    ).fetchone()["cnt"]

    if not advance_status(
        conn, "import", job_id, "fetching",
        total_threads_found=stats["threads"],
        conversation_threads=stats["conversations"],
    ):
        return cancelled("superseded")
    update_provider_config(conn, job["config_id"], sync_stage="fetching_bodies")
    ctx.dispatch(
        "email-fetch-bodies",
        {"job_id": job_id, "config_id": job["config_id"], "workspace_id": job["workspace_id"]},
    )
    return {
        "success": True,
        "noise_marked": len(noise_updates),
        "threads": stats["threads"],
        "conversation_threads": stats["conversations"],
        "queued_for_fetch": queued,
    }
