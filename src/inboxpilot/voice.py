"""Voice profile: learn the owner's writing style and watch it for drift."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta, timezone

from dateutil import parser as dateutil_parser

from inboxpilot.ai.base import is_unparsed
from inboxpilot.ai.prompts import DRIFT_PROMPT, VOICE_EXTRACTION_PROMPT
from inboxpilot.database import iso
from inboxpilot.errors import MalformedResponseError

logger = logging.getLogger(__name__)

DNA_TRAITS = (
    "openers", "closers", "tics", "tone_keywords",
    "formatting_rules", "avg_response_length", "emoji_usage",
)


def get_profile(conn: sqlite3.Connection, workspace_id: str) -> sqlite3.Row | None:
    return conn.execute(
        "SELECT * FROM voice_profiles WHERE workspace_id = ?", (workspace_id,)
    ).fetchone()


def reply_pairs(conn: sqlite3.Connection, workspace_id: str, limit: int = 100) -> list[dict]:
    """Owner replies paired with the customer message they answered, newest first."""
    rows = conn.execute(
        """SELECT o.body_clean AS owner_text, o.body AS owner_raw, o.created_at AS replied_at,
                  (SELECT COALESCE(i.body_clean, i.body) FROM messages i
                   WHERE i.conversation_id = o.conversation_id
                     AND i.direction = 'inbound' AND i.created_at <= o.created_at
                   ORDER BY i.created_at DESC LIMIT 1) AS customer_text,
                  (SELECT i.created_at FROM messages i
                   WHERE i.conversation_id = o.conversation_id
                     AND i.direction = 'inbound' AND i.created_at <= o.created_at
                   ORDER BY i.created_at DESC LIMIT 1) AS received_at
           FROM messages o
           JOIN conversations c ON c.id = o.conversation_id
           WHERE c.workspace_id = ? AND o.direction = 'outbound'
             AND o.actor_type = 'human_agent'
             AND COALESCE(o.body_clean, o.body, '') != ''
           ORDER BY o.created_at DESC""",
        (workspace_id,),
    ).fetchall()

    pairs = []
    for row in rows:
        if not row["customer_text"]:
            continue
        pairs.append({
            "customer_text": row["customer_text"],
            "owner_text": row["owner_text"] or row["owner_raw"],
            "response_hours": _hours_between(row["received_at"], row["replied_at"]),
        })
        if len(pairs) >= limit:
            break
    return pairs


def _hours_between(start: str | None, end: str | None) -> float | None:
    if not start or not end:
        return None
    try:
        delta = dateutil_parser.parse(end) - dateutil_parser.parse(start)
    except (ValueError, TypeError, OverflowError):
        return None
    return delta.total_seconds() / 3600


def _format_pairs(pairs: list[dict]) -> str:
    blocks = []
    for i, p in enumerate(pairs, 1):
        hours = p["response_hours"]
        blocks.append(
            f"--- EXCHANGE {i} ---\n"
            f"CUSTOMER: {(p['customer_text'] or '[empty]')[:500]}\n"
            f"OWNER REPLIED: {(p['owner_text'] or '[empty]')[:500]}\n"
            f"RESPONSE TIME: {f'{hours:.1f}' if hours is not None else 'unknown'} hours"
        )
    return "\n\n".join(blocks)


def _top_phrase(entries) -> str | None:
    phrases = [e for e in entries or [] if isinstance(e, dict) and e.get("phrase")]
    if not phrases:
        return None
    return max(phrases, key=lambda e: e.get("frequency") or 0)["phrase"]


def learn_voice(
    conn: sqlite3.Connection,
    workspace_id: str,
    provider,
    model: str,
    force_refresh: bool = False,
    min_pairs: int = 5,
    max_pairs: int = 100,
    refresh_hours: int = 24,
    now: datetime | None = None,
) -> dict:
    """Build or refresh the workspace voice profile from owner replies.

    Raises MalformedResponseError when the model output is not a usable profile.
    """
    now = now or datetime.now(timezone.utc)
    profile = get_profile(conn, workspace_id)
    if profile is not None and profile["updated_at"] and not force_refresh:
        updated = dateutil_parser.parse(profile["updated_at"])
        if now - updated < timedelta(hours=refresh_hours) and (profile["emails_analyzed"] or 0) > 0:
            return {"success": True, "skipped": True, "reason": "recently_updated"}

    pairs = reply_pairs(conn, workspace_id, limit=max_pairs)
    if len(pairs) < min_pairs:
        logger.info(
            "not enough reply pairs for voice learning (%d)", len(pairs),
            extra={"workspace_id": workspace_id},
        )
        return {"success": False, "reason": "insufficient_data", "pairs_found": len(pairs)}

    prompt = VOICE_EXTRACTION_PROMPT.format(pair_count=len(pairs), pairs=_format_pairs(pairs))
    result = provider.complete(prompt, model, response_format="json")
    if not isinstance(result, dict) or is_unparsed(result) or not isinstance(result.get("voice_dna"), dict):
        raise MalformedResponseError("Voice extraction returned no voice_dna object")

    dna = result["voice_dna"]
    playbook = result.get("playbook") if isinstance(result.get("playbook"), list) else []
    tone = ", ".join(str(k) for k in (dna.get("tone_keywords") or [])[:3]) or None
    confidence = round(min(1.0, len(pairs) / 50), 2)

    conn.execute(
        """INSERT INTO voice_profiles
           (workspace_id, voice_dna, playbook, summary, tone, greeting_style,
            signoff_style, emails_analyzed, confidence_score, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(workspace_id) DO UPDATE SET
               voice_dna = excluded.voice_dna,
               playbook = excluded.playbook,
               summary = excluded.summary,
               tone = excluded.tone,
               greeting_style = excluded.greeting_style,
               signoff_style = excluded.signoff_style,
               emails_analyzed = excluded.emails_analyzed,
               confidence_score = excluded.confidence_score,
               updated_at = excluded.updated_at""",
        (workspace_id, json.dumps(dna), json.dumps(playbook), result.get("summary"),
         tone, _top_phrase(dna.get("openers")), _top_phrase(dna.get("closers")),
         len(pairs), confidence, iso(now)),
    )
    conn.commit()

    logger.info(
        "voice profile updated from %d pairs", len(pairs),
        extra={"workspace_id": workspace_id},
    )
    return {
        "success": True,
        "pairs_analyzed": len(pairs),
        "playbook_categories": len(playbook),
        "confidence_score": confidence,
    }


def _log_drift(
    conn: sqlite3.Connection,
    workspace_id: str,
    score: float,
    traits: list,
    refresh: bool,
    sampled: int,
    status: str,
    now: datetime,
) -> None:
    conn.execute(
        """INSERT INTO voice_drift_log
           (workspace_id, drift_score, traits_changed, refresh_triggered,
            emails_sampled, status, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, score, json.dumps(traits), refresh, sampled, status, iso(now)),
    )
    conn.commit()


def detect_style_drift(
    conn: sqlite3.Connection,
    workspace_id: str,
    provider,
    model: str,
    threshold: float = 0.3,
    sample_size: int = 20,
    min_emails: int = 5,
    now: datetime | None = None,
) -> dict:
    """Compare recent outbound mail against the stored profile.

    ``refresh_triggered`` in the result tells the caller to relearn. A drift
    log row is written on every call that finds a profile.
    """
    now = now or datetime.now(timezone.utc)
    profile = get_profile(conn, workspace_id)
    if profile is None or not profile["voice_dna"]:
        return {"success": False, "reason": "no_voice_profile"}

    samples = conn.execute(
        """SELECT body, subject FROM email_import_queue
           WHERE workspace_id = ? AND direction = 'outbound' AND is_noise = 0
             AND body IS NOT NULL AND received_at > ?
           ORDER BY received_at DESC
           LIMIT ?""",
        (workspace_id, profile["updated_at"] or "2000-01-01", sample_size),
    ).fetchall()

    if len(samples) < min_emails:
        _log_drift(conn, workspace_id, 0.0, [], False, len(samples), "insufficient_data", now)
        return {
            "success": True,
            "drift_score": 0,
            "refresh_triggered": False,
            "emails_sampled": len(samples),
            "reason": "insufficient_data",
        }

    dna = json.loads(profile["voice_dna"])
    traits = json.dumps({k: dna.get(k) for k in DNA_TRAITS}, indent=2)
    sample_text = "\n\n".join(
        f"--- EMAIL {i} ---\n{(row['body'] or '')[:300].strip()}"
        for i, row in enumerate(samples, 1)
    )
    result = provider.complete(
        DRIFT_PROMPT.format(traits=traits, sample_count=len(samples), samples=sample_text),
        model,
        response_format="json",
    )
    if not isinstance(result, dict) or is_unparsed(result):
        raise MalformedResponseError("Failed to parse drift analysis")

    try:
        score = float(result.get("drift_score") or 0)
    except (TypeError, ValueError):
        score = 0.0
    score = min(1.0, max(0.0, score))
    changed = result.get("traits_changed") if isinstance(result.get("traits_changed"), list) else []
    refresh = score >= threshold

    _log_drift(
        conn, workspace_id, score, changed, refresh, len(samples),
        "refresh_triggered" if refresh else "checked", now,
    )
    logger.info(
        "style drift %.2f (refresh=%s)", score, refresh,
        extra={"workspace_id": workspace_id},
    )
    return {
        "success": True,
        "drift_score": score,
        "traits_changed": changed,
        "summary": result.get("summary") or "",
        "refresh_triggered": refresh,
        "emails_sampled": len(samples),
    }
