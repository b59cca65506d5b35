"""Owner corrections: reclassified conversations and rewritten reply drafts."""

from __future__ import annotations

import logging
import re
import sqlite3

from inboxpilot.database import utcnow
from inboxpilot.errors import NotFoundError
from inboxpilot.mail.parse import domain_of
from inboxpilot.triage.rules import upsert_sender_rule

logger = logging.getLogger(__name__)

EDIT_CATEGORY_KEYWORDS = (
    ("quote_request", ("price", "cost", "how much", "quote")),
    ("booking_request", ("book", "appointment", "available")),
    ("complaint", ("complaint", "unhappy", "wrong")),
)


def record_correction(
    db: sqlite3.Connection,
    workspace_id: str,
    conversation_id: int,
    classification: str,
    bucket: str,
    requires_reply: bool,
    scope: str = "conversation",
) -> int:
    """Store a correction and apply it to the conversation.

    With ``scope="sender"`` an active manual rule (confidence 100) is also
    written for the sender's domain, so future mail is triaged the same way.
    Returns the correction ID.
    """
    if scope not in ("conversation", "sender"):
        raise ValueError("scope must be 'conversation' or 'sender'")

    conv = db.execute(
        "SELECT * FROM conversations WHERE id = ? AND workspace_id = ?",
        (conversation_id, workspace_id),
    ).fetchone()
    if conv is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")

    now = utcnow()
    cursor = db.execute(
        """INSERT INTO classification_corrections
           (workspace_id, conversation_id, sender_email, original_classification,
            corrected_classification, original_bucket, corrected_bucket,
            corrected_requires_reply, scope, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, conversation_id, conv["sender_email"], conv["email_classification"],
         classification, conv["decision_bucket"], bucket, requires_reply, scope, now),
    )
    db.execute(
        """UPDATE conversations SET email_classification = ?, decision_bucket = ?,
               requires_reply = ?, triage_confidence = 100, triage_source = 'correction',
               updated_at = ?
           WHERE id = ?""",
        (classification, bucket, requires_reply, now, conversation_id),
    )
    db.commit()

    domain = domain_of(conv["sender_email"])
    if scope == "sender" and domain:
        upsert_sender_rule(
            db, workspace_id, f"@{domain}",
            classification=classification,
            requires_reply=requires_reply,
            bucket=bucket,
            confidence=100,
        )

    return cursor.lastrowid


def list_corrections(db: sqlite3.Connection, workspace_id: str, limit: int | None = None) -> list[dict]:
    """List corrections, newest first."""
    sql = """SELECT id, conversation_id, sender_email, original_classification,
                    corrected_classification, original_bucket, corrected_bucket,
                    corrected_requires_reply, scope, created_at
             FROM classification_corrections
             WHERE workspace_id = ?
             ORDER BY created_at DESC, id DESC"""
    params: tuple = (workspace_id,)
    if limit:
        sql += " LIMIT ?"
        params += (limit,)
    return [dict(row) for row in db.execute(sql, params).fetchall()]


def correction_stats(db: sqlite3.Connection, workspace_id: str) -> dict[str, dict]:
    """Correction counts per originally assigned decision bucket.

    Returns dict of bucket -> {total_corrections, total_classified, correction_rate, needs_tuning}.
    """
    stats: dict[str, dict] = {}

    rows = db.execute(
        """SELECT COALESCE(original_bucket, 'unclassified') AS bucket, COUNT(*) AS cnt
           FROM classification_corrections
           WHERE workspace_id = ?
           GROUP BY bucket""",
        (workspace_id,),
    ).fetchall()

    total_row = db.execute(
        "SELECT COUNT(*) AS cnt FROM conversations WHERE workspace_id = ? AND decision_bucket IS NOT NULL",
        (workspace_id,),
    ).fetchone()
    total = total_row["cnt"] if total_row else 0

    for row in rows:
        count = row["cnt"]
        rate = (count / total * 100) if total > 0 else 0
        stats[row["bucket"]] = {
            "total_corrections": count,
            "total_classified": total,
            "correction_rate": round(rate, 1),
            "needs_tuning": rate > 20,
        }

    return stats


def edit_similarity(a: str, b: str) -> float:
    """Jaccard overlap of the words longer than two characters in each text."""
    words_a = {w for w in re.split(r"\s+", (a or "").lower()) if len(w) > 2}
    words_b = {w for w in re.split(r"\s+", (b or "").lower()) if len(w) > 2}
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def edit_category(inbound_text: str) -> str:
    text = (inbound_text or "").lower()
    for category, keywords in EDIT_CATEGORY_KEYWORDS:
        if any(k in text for k in keywords):
            return category
    return "general"


def record_draft_edit(
    db: sqlite3.Connection,
    workspace_id: str,
    final_sent: str,
    inbound_message: str,
    original_draft: str = "",
    conversation_id: int | None = None,
    draft_id: int | None = None,
    min_similarity: float = 0.8,
) -> dict:
    """Store what the owner actually sent when it differs enough from the draft.

    Stored edits become examples in later draft prompts for the same
    category of customer message. A light touch-up (similarity at or above
    ``min_similarity``) is not stored.
    """
    similarity = round(edit_similarity(original_draft, final_sent), 3)
    if similarity >= min_similarity:
        return {
            "success": True,
            "learned": False,
            "similarity": similarity,
            "reason": f"Edit was minor (>= {min_similarity:.0%} similar), no learning needed",
        }

    category = edit_category(inbound_message)
    cursor = db.execute(
        """INSERT INTO draft_edits
           (workspace_id, conversation_id, draft_id, category, inbound_text,
            original_draft, final_sent, similarity, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, conversation_id, draft_id, category, inbound_message,
         original_draft or "", final_sent, similarity, utcnow()),
    )
    db.commit()
    logger.info(
        "stored draft edit as %s example (similarity %.2f)", category, similarity,
        extra={"workspace_id": workspace_id},
    )
    return {
        "success": True,
        "learned": True,
        "edit_id": cursor.lastrowid,
        "similarity": similarity,
        "category": category,
    }


def draft_edit_examples(
    db: sqlite3.Connection, workspace_id: str, category: str, limit: int = 3
) -> list[dict]:
    """Most recent edits for ``category``, topped up with other recent edits."""
    rows = db.execute(
        """SELECT inbound_text, final_sent, category FROM draft_edits
           WHERE workspace_id = ?
           ORDER BY category = ? DESC, created_at DESC, id DESC
           LIMIT ?""",
        (workspace_id, category, limit),
    ).fetchall()
    return [dict(row) for row in rows]
