"""Conversation triage: sender-rule fast path, then batched LLM classification."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from inboxpilot.ai.base import is_unparsed
from inboxpilot.ai.prompts import (
    CLASSIFY_BATCH_PROMPT,
    CLASSIFY_SYSTEM,
    CORRECTION_EXAMPLES_HEADER,
)
from inboxpilot.database import utcnow
from inboxpilot.errors import TRANSIENT_ERRORS
from inboxpilot.triage.rules import match_sender_rule

logger = logging.getLogger(__name__)

CATEGORIES = [
    "inquiry", "booking", "quote", "complaint",
    "follow_up", "spam", "notification", "personal",
]

CATEGORY_BUCKETS = {
    "inquiry": "quick_win",
    "booking": "act_now",
    "quote": "act_now",
    "complaint": "act_now",
    "follow_up": "quick_win",
    "spam": "auto_handled",
    "notification": "auto_handled",
    "personal": "wait",
}

BUCKETS = {"act_now", "quick_win", "wait", "auto_handled"}


@dataclass
class TriageResult:
    classification: str
    bucket: str
    requires_reply: bool
    confidence: int
    source: str
    reason: str | None = None


FALLBACK = TriageResult(
    classification="uncategorized",
    bucket="wait",
    requires_reply=True,
    confidence=0,
    source="fallback",
    reason="classifier output unusable",
)


def rule_result(rule: sqlite3.Row) -> TriageResult:
    classification = rule["default_classification"] or "uncategorized"
    bucket = rule["override_bucket"] or CATEGORY_BUCKETS.get(classification, "wait")
    return TriageResult(
        classification=classification,
        bucket=bucket,
        requires_reply=bool(rule["default_requires_reply"]),
        confidence=rule["confidence_score"] or 0,
        source="rule",
        reason=f"sender rule {rule['sender_pattern']}",
    )


def _few_shot_examples(conn: sqlite3.Connection, workspace_id: str, limit: int) -> str:
    """Recent owner corrections formatted as prompt examples (empty if none)."""
    if limit <= 0:
        return ""
    rows = conn.execute(
        """SELECT sender_email, original_classification, corrected_classification,
                  corrected_bucket, corrected_requires_reply
           FROM classification_corrections
           WHERE workspace_id = ?
           ORDER BY created_at DESC, id DESC
           LIMIT ?""",
        (workspace_id, limit),
    ).fetchall()
    if not rows:
        return ""
    lines = [
        f"- {row['sender_email'] or 'unknown'}: was {row['original_classification'] or 'unclassified'}, "
        f"should be {row['corrected_classification']} "
        f"(bucket {row['corrected_bucket']}, reply={'true' if row['corrected_requires_reply'] else 'false'})"
        for row in rows
    ]
    return CORRECTION_EXAMPLES_HEADER.format(lines="\n".join(lines))


def _items(result) -> list | None:
    """Pull the classification list out of a provider response."""
    if isinstance(result, list):
        return result
    if isinstance(result, dict) and not is_unparsed(result):
        for key in ("results", "classifications", "emails", "items"):
            if isinstance(result.get(key), list):
                return result[key]
    return None


def _to_result(item: dict) -> TriageResult | None:
    category = str(item.get("c") or item.get("category") or "").strip().lower()
    if category not in CATEGORIES:
        return None
    bucket = str(item.get("b") or "").strip().lower()
    if bucket not in BUCKETS:
        bucket = CATEGORY_BUCKETS[category]
    reply = item.get("r", item.get("requires_reply"))
    requires_reply = reply if isinstance(reply, bool) else bucket != "auto_handled"
    try:
        confidence = int(float(item.get("conf", 70)))
    except (TypeError, ValueError):
        confidence = 70
    return TriageResult(
        classification=category,
        bucket=bucket,
        requires_reply=requires_reply,
        confidence=max(0, min(100, confidence)),
        source="llm",
    )


def classify_with_llm(
    provider,
    model: str,
    emails: list[dict],
    examples: str = "",
) -> list[TriageResult]:
    """Classify a sub-batch in one call. Unparseable output is retried once at temperature 0.

    Returns one result per input email; entries the model skipped get FALLBACK.
    Rate-limit errors propagate.
    """
    lines = [
        "{i}|{from_email}|{subject}|{snippet}".format(
            i=i,
            from_email=e.get("from_email") or "",
            subject=(e.get("subject") or "(none)").replace("|", "/"),
            snippet=(e.get("snippet") or "")[:150].replace("\n", " ").replace("|", "/"),
        )
        for i, e in enumerate(emails)
    ]
    prompt = CLASSIFY_BATCH_PROMPT.format(
        categories=", ".join(CATEGORIES), examples=examples, emails="\n".join(lines),
    )

    items = None
    for temperature in (0.1, 0.0):
        items = _items(provider.complete(prompt, model, system=CLASSIFY_SYSTEM, temperature=temperature))
        if items is not None:
            break
        logger.warning("unparseable classification output, temperature=%s", temperature)

    results = [FALLBACK] * len(emails)
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            idx = int(item.get("i"))
        except (TypeError, ValueError):
            continue
        if 0 <= idx < len(emails):
            parsed = _to_result(item)
            if parsed is not None:
                results[idx] = parsed
    return results


def write_triage(conn: sqlite3.Connection, conversation_id: int, result: TriageResult) -> None:
    conn.execute(
        """UPDATE conversations SET email_classification = ?, decision_bucket = ?,
               requires_reply = ?, triage_confidence = ?, triage_source = ?,
               triage_reason = ?, updated_at = ?
           WHERE id = ?""",
        (result.classification, result.bucket, result.requires_reply, result.confidence,
         result.source, result.reason, utcnow(), conversation_id),
    )


def classify_conversations(
    conn: sqlite3.Connection,
    workspace_id: str,
    provider,
    model: str,
    batch_size: int = 50,
    llm_batch_size: int = 25,
    rule_min_confidence: int = 70,
    few_shot_corrections: int = 10,
) -> dict:
    """Classify one batch of untriaged conversations for a workspace.

    Returns counts plus ``remaining`` and ``rate_limited``; a rate limit stops
    the batch with the unprocessed conversations left untriaged.
    """
    rows = conn.execute(
        """SELECT c.id, c.sender_email, c.title,
                  (SELECT COALESCE(m.body_clean, m.body) FROM messages m
                   WHERE m.conversation_id = c.id AND m.direction = 'inbound'
                   ORDER BY m.created_at LIMIT 1) AS snippet
           FROM conversations c
           WHERE c.workspace_id = ? AND c.decision_bucket IS NULL
           ORDER BY c.updated_at DESC, c.id
           LIMIT ?""",
        (workspace_id, batch_size),
    ).fetchall()

    counts = {"classified": 0, "rule": 0, "llm": 0, "fallback": 0, "rate_limited": False}
    pending: list[sqlite3.Row] = []
    for row in rows:
        rule = match_sender_rule(conn, workspace_id, row["sender_email"] or "")
        if rule is not None and (rule["confidence_score"] or 0) >= rule_min_confidence:
            write_triage(conn, row["id"], rule_result(rule))
            counts["rule"] += 1
            counts["classified"] += 1
        else:
            pending.append(row)
    conn.commit()

    examples = _few_shot_examples(conn, workspace_id, few_shot_corrections) if pending else ""
    for start in range(0, len(pending), llm_batch_size):
        chunk = pending[start:start + llm_batch_size]
        emails = [
            {"from_email": r["sender_email"], "subject": r["title"], "snippet": r["snippet"]}
            for r in chunk
        ]
        try:
            results = classify_with_llm(provider, model, emails, examples)
        except TRANSIENT_ERRORS as e:
            logger.warning(
                "classification rate limited: %s", e, extra={"workspace_id": workspace_id},
            )
            counts["rate_limited"] = True
            break
        for row, result in zip(chunk, results):
            write_triage(conn, row["id"], result)
            counts[result.source] += 1
            counts["classified"] += 1
        conn.commit()

    remaining = conn.execute(
        "SELECT COUNT(*) AS cnt FROM conversations WHERE workspace_id = ? AND decision_bucket IS NULL",
        (workspace_id,),
    ).fetchone()["cnt"]
    counts["remaining"] = remaining
    return counts
