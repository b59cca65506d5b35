"""Write scanned messages into the queue and fetched bodies into conversations.

All writes are upserts on natural keys, so replaying the same page or message
never creates a second row.
"""

from __future__ import annotations

import sqlite3

from inboxpilot.database import utcnow
from inboxpilot.mail.parse import domain_of, queue_row


def upsert_queue_rows(
    conn: sqlite3.Connection,
    workspace_id: str,
    config_id: str | None,
    job_id: str | None,
    records: list[dict],
    direction: str,
) -> int:
    """Queue message-list records. Returns the number of records seen.

    A message already queued by an earlier import is re-attributed to this job
    but keeps its status and body.
    """
    rows = [queue_row(r, direction) for r in records if r.get("id")]
    conn.executemany(
        """INSERT INTO email_import_queue
           (workspace_id, config_id, job_id, external_id, thread_id, direction,
            from_email, from_name, to_emails, subject, snippet, received_at, status)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'scanned')
           ON CONFLICT(workspace_id, external_id) DO UPDATE SET
               job_id = COALESCE(excluded.job_id, email_import_queue.job_id),
               config_id = excluded.config_id""",
        [
            (workspace_id, config_id, job_id, r["external_id"], r["thread_id"], r["direction"],
             r["from_email"], r["from_name"], r["to_emails"], r["subject"], r["snippet"],
             r["received_at"])
            for r in rows
        ],
    )
    conn.commit()
    return len(rows)


def upsert_conversation(
    conn: sqlite3.Connection, workspace_id: str, thread_id: str, job_id: str | None = None
) -> int:
    """Return the conversation for a thread, creating it from the thread's first customer message."""
    existing = conn.execute(
        "SELECT id FROM conversations WHERE workspace_id = ? AND thread_id = ?",
        (workspace_id, thread_id),
    ).fetchone()
    if existing:
        return existing["id"]

    first_inbound = conn.execute(
        """SELECT from_email, subject, received_at FROM email_import_queue
           WHERE workspace_id = ? AND thread_id = ? AND direction = 'inbound' AND is_noise = 0
           ORDER BY received_at LIMIT 1""",
        (workspace_id, thread_id),
    ).fetchone()
    sender = first_inbound["from_email"] if first_inbound else None
    title = first_inbound["subject"] if first_inbound else None
    created = (first_inbound["received_at"] if first_inbound else None) or utcnow()

    conn.execute(
        """INSERT INTO conversations
           (workspace_id, thread_id, sender_email, sender_domain, title, channel,
            status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, 'email', 'open', ?, ?)
           ON CONFLICT(workspace_id, thread_id) DO NOTHING""",
        (workspace_id, thread_id, sender, domain_of(sender) or None, title, created, utcnow()),
    )
    return conn.execute(
        "SELECT id FROM conversations WHERE workspace_id = ? AND thread_id = ?",
        (workspace_id, thread_id),
    ).fetchone()["id"]


def ingest_message(
    conn: sqlite3.Connection,
    workspace_id: str,
    queue_item: sqlite3.Row,
    body: str,
    own_addresses: set[str],
) -> bool:
    """Attach a fetched message to its conversation. Returns True if a row was inserted."""
    conversation_id = upsert_conversation(
        conn, workspace_id, queue_item["thread_id"] or queue_item["external_id"],
    )
    from_email = (queue_item["from_email"] or "").lower()
    outbound = queue_item["direction"] == "outbound" or from_email in own_addresses
    cur = conn.execute(
        """INSERT INTO messages
           (conversation_id, external_id, direction, actor_type, actor_name,
            from_email, body, body_clean, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(conversation_id, external_id) DO NOTHING""",
        (conversation_id, queue_item["external_id"],
         "outbound" if outbound else "inbound",
         "human_agent" if outbound else "customer",
         queue_item["from_name"], from_email, body, body,
         queue_item["received_at"] or utcnow()),
    )
    return cur.rowcount > 0
