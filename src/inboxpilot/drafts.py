"""Reply drafts: generation from the voice profile and FAQs, and verification."""

from __future__ import annotations

import json
import logging
import sqlite3

from inboxpilot.ai.base import is_unparsed
from inboxpilot.ai.prompts import (
    DRAFT_EDITS_SECTION,
    DRAFT_NO_VOICE,
    DRAFT_PROMPT,
    DRAFT_SYSTEM,
    DRAFT_VOICE_SECTION,
    VERIFY_PROMPT,
    VERIFY_SYSTEM,
)
from inboxpilot.database import utcnow
from inboxpilot.errors import MalformedResponseError, NotFoundError
from inboxpilot.triage.corrections import draft_edit_examples, edit_category
from inboxpilot.voice import get_profile

logger = logging.getLogger(__name__)

VERIFY_STATUSES = ("passed", "failed", "needs_review")
ISSUE_SEVERITIES = ("critical", "warning", "info")
VERIFY_FALLBACK_NOTE = "Verification output could not be parsed; assuming passed"


def get_conversation(conn: sqlite3.Connection, workspace_id: str, conversation_id: int) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM conversations WHERE id = ? AND workspace_id = ?",
        (conversation_id, workspace_id),
    ).fetchone()
    if row is None:
        raise NotFoundError(f"Conversation {conversation_id} not found in workspace {workspace_id}")
    return row


def thread_messages(conn: sqlite3.Connection, conversation_id: int) -> list[sqlite3.Row]:
    return conn.execute(
        """SELECT direction, from_email, COALESCE(body_clean, body, '') AS text, created_at
           FROM messages WHERE conversation_id = ?
           ORDER BY created_at, id""",
        (conversation_id,),
    ).fetchall()


def last_inbound(messages: list[sqlite3.Row]) -> str:
    for message in reversed(messages):
        if message["direction"] == "inbound":
            return message["text"]
    return ""


def knowledge_base(conn: sqlite3.Connection, workspace_id: str, limit: int) -> list[sqlite3.Row]:
    """Active FAQs, highest priority first."""
    return conn.execute(
        """SELECT question, answer FROM faq_database
           WHERE workspace_id = ? AND is_active = 1
           ORDER BY priority DESC, id
           LIMIT ?""",
        (workspace_id, limit),
    ).fetchall()


def draft_confidence(has_profile: bool, faq_count: int, message_count: int) -> float:
    """Confidence from the amount of context the draft was written with, capped at 0.95."""
    confidence = 0.5
    if has_profile:
        confidence += 0.2
    if faq_count:
        confidence += min(faq_count * 0.05, 0.15)
    if message_count > 1:
        confidence += 0.05
    if message_count > 3:
        confidence += 0.05
    return round(min(confidence, 0.95), 2)


def _voice_section(profile: sqlite3.Row | None) -> str:
    if profile is None or not profile["voice_dna"]:
        return DRAFT_NO_VOICE
    return DRAFT_VOICE_SECTION.format(
        tone=profile["tone"] or "professional and friendly",
        greeting=profile["greeting_style"] or "Hi [Name]",
        signoff=profile["signoff_style"] or "Best regards",
        summary=profile["summary"] or "none",
    )


def _format_faqs(faqs: list[sqlite3.Row]) -> str:
    return "\n\n".join(f"Q: {f['question']}\nA: {f['answer']}" for f in faqs)


def _draft_text(result) -> str:
    # Plain prose comes back as {"text": ...}; some models wrap the reply in JSON
    if isinstance(result, str):
        return result.strip()
    if isinstance(result, dict):
        if is_unparsed(result):
            return (result["text"] or "").strip()
        for key in ("body", "draft", "reply", "message"):
            if isinstance(result.get(key), str):
                return result[key].strip()
    return ""


def generate_draft(
    conn: sqlite3.Connection,
    workspace_id: str,
    conversation_id: int,
    provider,
    model: str,
    faq_limit: int = 5,
    edit_examples: int = 3,
) -> dict:
    """Write a reply to the latest customer message and store it as a draft.

    The prompt carries the conversation, the voice profile, the top FAQs and
    the owner's recent rewrites of earlier drafts. Raises NotFoundError for
    an unknown or empty conversation and MalformedResponseError when the
    model returns no text.
    """
    conv = get_conversation(conn, workspace_id, conversation_id)
    messages = thread_messages(conn, conversation_id)
    if not messages:
        raise NotFoundError(f"Conversation {conversation_id} has no messages")

    workspace = conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    profile = get_profile(conn, workspace_id)
    faqs = knowledge_base(conn, workspace_id, faq_limit)
    examples = draft_edit_examples(conn, workspace_id, edit_category(last_inbound(messages)), edit_examples)

    knowledge = ""
    if faqs:
        knowledge = f"\nKNOWLEDGE BASE:\n{_format_faqs(faqs)}\n"
    edits = ""
    if examples:
        edits = DRAFT_EDITS_SECTION.format(examples="\n\n".join(
            f"CUSTOMER: {(e['inbound_text'] or '')[:300]}\nOWNER SENT: {e['final_sent'][:500]}" for e in examples
        ))
    history = "\n\n".join(
        f"[{'Customer' if m['direction'] == 'inbound' else 'Business'}]: {m['text']}" for m in messages
    )

    prompt = DRAFT_PROMPT.format(
        business_name=(workspace["name"] if workspace else None) or "the business",
        industry=(workspace["industry"] if workspace else None) or "service",
        customer_email=conv["sender_email"] or "unknown",
        subject=conv["title"] or "No subject",
        category=conv["email_classification"] or "general inquiry",
        voice=_voice_section(profile),
        knowledge=knowledge,
        edits=edits,
        history=history,
    )
    body = _draft_text(provider.complete(prompt, model, system=DRAFT_SYSTEM))
    if not body:
        raise MalformedResponseError("Draft generation returned no text")

    has_profile = profile is not None and bool(profile["voice_dna"])
    confidence = draft_confidence(has_profile, len(faqs), len(messages))
    faqs_used = [f["question"] for f in faqs]
    now = utcnow()
    cursor = conn.execute(
        """INSERT INTO drafts
           (workspace_id, conversation_id, body, confidence, faqs_used, status, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, 'draft', ?, ?)""",
        (workspace_id, conversation_id, body, confidence, json.dumps(faqs_used), now, now),
    )
    conn.commit()

    logger.info(
        "drafted reply (%d chars, confidence %.2f)", len(body), confidence,
        extra={"workspace_id": workspace_id, "conversation_id": conversation_id},
    )
    return {
        "success": True,
        "draft_id": cursor.lastrowid,
        "draft": body,
        "confidence": confidence,
        "faqs_used": faqs_used,
        "edit_examples_used": len(examples),
    }


def _clean_issues(raw) -> list[dict]:
    issues = []
    for issue in raw if isinstance(raw, list) else []:
        if not isinstance(issue, dict) or not issue.get("description"):
            continue
        severity = issue.get("severity")
        issues.append({
            "type": str(issue.get("type") or "other"),
            "severity": severity if severity in ISSUE_SEVERITIES else "warning",
            "description": str(issue["description"]),
            "suggestion": issue.get("suggestion"),
        })
    return issues


def _parse_verification(result) -> dict | None:
    if not isinstance(result, dict) or is_unparsed(result):
        return None
    status = result.get("status")
    if status not in VERIFY_STATUSES:
        return None
    try:
        confidence = float(result.get("confidence_score"))
    except (TypeError, ValueError):
        confidence = 0.5
    corrected = result.get("corrected_draft")
    return {
        "status": status,
        "issues": _clean_issues(result.get("issues")),
        "corrected_draft": corrected if isinstance(corrected, str) and corrected.strip() else None,
        "confidence_score": min(1.0, max(0.0, confidence)),
        "notes": str(result.get("notes") or ""),
    }


def verify_draft(
    conn: sqlite3.Connection,
    workspace_id: str,
    provider,
    model: str,
    conversation_id: int | None = None,
    draft: str | None = None,
    draft_id: int | None = None,
    customer_message: str | None = None,
    faq_limit: int = 10,
) -> dict:
    """Check a draft against the business facts and FAQ knowledge base.

    The draft is either passed in or loaded by ``draft_id``. Model output
    that cannot be parsed does not block the reply: the verification is
    recorded as ``passed`` with confidence 0.5 and ``fallback`` set.
    """
    if draft_id is not None:
        row = conn.execute(
            "SELECT * FROM drafts WHERE id = ? AND workspace_id = ?", (draft_id, workspace_id)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Draft {draft_id} not found")
        draft = draft or row["body"]
        conversation_id = conversation_id or row["conversation_id"]

    if customer_message is None and conversation_id is not None:
        get_conversation(conn, workspace_id, conversation_id)
        customer_message = last_inbound(thread_messages(conn, conversation_id))

    workspace = conn.execute("SELECT * FROM workspaces WHERE id = ?", (workspace_id,)).fetchone()
    facts = "(none recorded)"
    if workspace is not None:
        facts = "\n".join(
            f"- {label}: {workspace[col]}"
            for label, col in (("Name", "name"), ("Industry", "industry"),
                               ("Service area", "service_area"), ("Tone", "tone_description"))
            if workspace[col]
        ) or facts
    faqs = knowledge_base(conn, workspace_id, faq_limit)

    prompt = VERIFY_PROMPT.format(
        facts=facts,
        knowledge=_format_faqs(faqs) or "(empty)",
        customer_message=customer_message or "(not available)",
        draft=draft,
    )
    parsed = _parse_verification(provider.complete(prompt, model, system=VERIFY_SYSTEM, response_format="json"))
    fallback = parsed is None
    if fallback:
        logger.warning(
            "unparseable verification output, assuming passed",
            extra={"workspace_id": workspace_id, "conversation_id": conversation_id},
        )
        parsed = {"status": "passed", "issues": [], "corrected_draft": None,
                  "confidence_score": 0.5, "notes": VERIFY_FALLBACK_NOTE}

    now = utcnow()
    cursor = conn.execute(
        """INSERT INTO draft_verifications
           (workspace_id, conversation_id, draft_id, original_draft, verification_status,
            issues_found, corrected_draft, confidence_score, verification_notes, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, conversation_id, draft_id, draft, parsed["status"],
         json.dumps(parsed["issues"]), parsed["corrected_draft"],
         parsed["confidence_score"], parsed["notes"], now),
    )
    if draft_id is not None:
        conn.execute(
            "UPDATE drafts SET status = ?, updated_at = ? WHERE id = ?",
            (parsed["status"], now, draft_id),
        )
    conn.commit()

    return {"success": True, "verification_id": cursor.lastrowid, "fallback": fallback, **parsed}
