"""Sender rules: matching, noise detection and bootstrapping from reply history.

A sender rule maps a sender pattern to a default classification and decision
bucket.  Patterns come in three forms, tried most specific first:

    jane@acme.com   exact address
    @acme.com       any address at the domain
    acme.com        bare domain (legacy form)

Bootstrapping looks at how often the owner actually replied to each sender
domain and proposes rules; high-confidence proposals are created directly.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import asdict, dataclass

from inboxpilot.database import utcnow
from inboxpilot.mail.parse import domain_of

logger = logging.getLogger(__name__)

# (substring matched against the lower-cased sender address, noise reason)
NOISE_PATTERNS: list[tuple[str, str]] = [
    ("noreply", "noreply"),
    ("no-reply", "noreply"),
    ("donotreply", "noreply"),
    ("@stripe.com", "payment_notification"),
    ("@paypal.com", "payment_notification"),
    ("@gocardless.com", "payment_notification"),
    ("@indeed.com", "job_board"),
    ("@linkedin.com", "job_board"),
    ("@facebook.com", "social_notification"),
    ("@facebookmail.com", "social_notification"),
    ("@twitter.com", "social_notification"),
    ("@mailchimp.com", "newsletter"),
    ("newsletter", "newsletter"),
    ("mailer-daemon", "system"),
    ("postmaster@", "system"),
]

PAYMENT_KEYWORDS = ("stripe", "paypal", "gocardless")
JOB_BOARD_KEYWORDS = ("indeed", "linkedin", "reed", "totaljobs")
NOTIFICATION_KEYWORDS = ("noreply", "no-reply", "notifications")


def noise_reason(from_email: str | None) -> str | None:
    """Return why an address is bulk/automated mail, or None for a real sender."""
    addr = (from_email or "").lower()
    if not addr:
        return None
    for needle, reason in NOISE_PATTERNS:
        if needle in addr:
            return reason
    return None


def match_sender_rule(
    conn: sqlite3.Connection, workspace_id: str, sender_email: str
) -> sqlite3.Row | None:
    """Find the most specific active rule for a sender, or None."""
    email = (sender_email or "").strip().lower()
    domain = domain_of(email)
    candidates = [email]
    if domain:
        candidates += [f"@{domain}", domain]

    rows = conn.execute(
        f"""SELECT * FROM sender_rules
            WHERE workspace_id = ? AND is_active = 1
              AND lower(sender_pattern) IN ({",".join("?" * len(candidates))})""",
        (workspace_id, *candidates),
    ).fetchall()
    by_pattern = {row["sender_pattern"].lower(): row for row in rows}
    for pattern in candidates:
        if pattern in by_pattern:
            return by_pattern[pattern]
    return None


def upsert_sender_rule(
    conn: sqlite3.Connection,
    workspace_id: str,
    sender_pattern: str,
    classification: str,
    requires_reply: bool,
    bucket: str,
    confidence: int,
    email_count: int = 0,
    auto_created: bool = False,
) -> int:
    now = utcnow()
    conn.execute(
        """INSERT INTO sender_rules
           (workspace_id, sender_pattern, default_classification, default_requires_reply,
            override_bucket, is_active, confidence_score, email_count, auto_created,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
           ON CONFLICT(workspace_id, sender_pattern) DO UPDATE SET
               default_classification = excluded.default_classification,
               default_requires_reply = excluded.default_requires_reply,
               override_bucket = excluded.override_bucket,
               is_active = 1,
               confidence_score = excluded.confidence_score,
               email_count = excluded.email_count,
               auto_created = excluded.auto_created,
               updated_at = excluded.updated_at""",
        (workspace_id, sender_pattern.lower(), classification, requires_reply, bucket,
         confidence, email_count, auto_created, now, now),
    )
    row = conn.execute(
        "SELECT id FROM sender_rules WHERE workspace_id = ? AND sender_pattern = ?",
        (workspace_id, sender_pattern.lower()),
    ).fetchone()
    conn.commit()
    return row["id"]


@dataclass
class RuleSuggestion:
    sender_domain: str
    total_emails: int
    replied_count: int
    ignored_count: int
    reply_rate: int
    suggested_bucket: str
    suggested_classification: str
    requires_reply: bool
    confidence: int

    def to_dict(self) -> dict:
        return asdict(self)


def suggest_rule(domain: str, total: int, replied: int) -> RuleSuggestion:
    """Propose a rule for a sender domain from its reply statistics."""
    reply_rate = (replied / total) * 100 if total > 0 else 0.0

    bucket, classification, requires_reply, confidence = (
        "quick_win", "customer_inquiry", True, 50.0,
    )
    if reply_rate < 10 and total >= 3:
        bucket, classification, requires_reply = "auto_handled", "automated_notification", False
        confidence = min(95, 70 + total * 2)
    elif reply_rate < 25:
        bucket, classification, requires_reply = "wait", "fyi_notification", False
        confidence = min(85, 60 + total * 1.5)
    elif reply_rate > 90:
        bucket, classification, requires_reply = "act_now", "customer_inquiry", True
        confidence = 90
    elif reply_rate > 80:
        bucket, classification, requires_reply = "quick_win", "customer_inquiry", True
        confidence = min(95, 75 + (reply_rate - 80) / 2)

    lower = domain.lower()
    if any(k in lower for k in PAYMENT_KEYWORDS):
        bucket, classification, requires_reply, confidence = (
            "auto_handled", "receipt_confirmation", False, 95,
        )
    elif any(k in lower for k in JOB_BOARD_KEYWORDS):
        bucket, classification, requires_reply, confidence = (
            "auto_handled", "recruitment_hr", False, 95,
        )
    elif any(k in lower for k in NOTIFICATION_KEYWORDS):
        bucket, classification, requires_reply, confidence = (
            "auto_handled", "automated_notification", False, 90,
        )

    return RuleSuggestion(
        sender_domain=domain,
        total_emails=total,
        replied_count=replied,
        ignored_count=total - replied,
        reply_rate=round(reply_rate),
        suggested_bucket=bucket,
        suggested_classification=classification,
        requires_reply=requires_reply,
        confidence=math.floor(confidence),
    )


def _domain_stats(conn: sqlite3.Connection, workspace_id: str) -> dict[str, tuple[int, int]]:
    """Per sender domain: (conversations, conversations with a human reply)."""
    rows = conn.execute(
        """SELECT c.sender_domain AS domain,
                  COUNT(*) AS total,
                  SUM(CASE WHEN EXISTS (
                      SELECT 1 FROM messages m
                      WHERE m.conversation_id = c.id
                        AND m.direction = 'outbound' AND m.actor_type != 'ai'
                  ) THEN 1 ELSE 0 END) AS replied
           FROM conversations c
           WHERE c.workspace_id = ? AND c.sender_domain IS NOT NULL AND c.sender_domain != ''
           GROUP BY c.sender_domain""",
        (workspace_id,),
    ).fetchall()
    return {row["domain"].lower(): (row["total"], row["replied"] or 0) for row in rows}


def bootstrap_sender_rules(
    conn: sqlite3.Connection,
    workspace_id: str,
    min_email_count: int = 5,
    auto_create_confidence: int = 85,
    max_suggestions: int = 20,
) -> dict:
    """Analyse reply behaviour per sender domain and create high-confidence rules.

    Returns {"suggestions": [...top N...], "total_domains_analyzed",
    "total_suggestions", "rules_created"}.
    """
    existing = {
        row["sender_pattern"].lower()
        for row in conn.execute(
            "SELECT sender_pattern FROM sender_rules WHERE workspace_id = ?", (workspace_id,)
        )
    }

    stats = _domain_stats(conn, workspace_id)
    suggestions: list[RuleSuggestion] = []
    for domain, (total, replied) in stats.items():
        if f"@{domain}" in existing or domain in existing:
            continue
        if total < min_email_count:
            continue
        suggestions.append(suggest_rule(domain, total, replied))

    suggestions.sort(key=lambda s: (-s.confidence, -s.total_emails))

    created = 0
    for s in suggestions:
        if s.confidence < auto_create_confidence:
            continue
        upsert_sender_rule(
            conn, workspace_id, f"@{s.sender_domain}",
            classification=s.suggested_classification,
            requires_reply=s.requires_reply,
            bucket=s.suggested_bucket,
            confidence=s.confidence,
            email_count=s.total_emails,
            auto_created=True,
        )
        created += 1

    logger.info(
        "bootstrapped sender rules: %d suggestions, %d created", len(suggestions), created,
        extra={"workspace_id": workspace_id},
    )
    return {
        "suggestions": [s.to_dict() for s in suggestions[:max_suggestions]],
        "total_domains_analyzed": len(stats),
        "total_suggestions": len(suggestions),
        "rules_created": created,
    }
