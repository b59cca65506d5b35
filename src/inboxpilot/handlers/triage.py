"""Conversation triage handlers: classify, bootstrap sender rules, record corrections."""

from __future__ import annotations

import logging

from inboxpilot.errors import ConfigurationError
from inboxpilot.handlers.base import (
    HandlerContext,
    cancelled,
    continue_later,
    job_phase,
    past_phase,
    require,
    update_provider_config,
)
from inboxpilot.jobs.state import advance_status, heartbeat, load_active_job
from inboxpilot.triage.classify import classify_conversations
from inboxpilot.triage.corrections import record_correction
from inboxpilot.triage.rules import bootstrap_sender_rules as bootstrap_rules

logger = logging.getLogger(__name__)


@job_phase("import", "email-classify")
def email_classify(ctx: HandlerContext, payload: dict) -> dict:
    """Classify a batch of untriaged conversations.

    Without ``job_id`` this is a standalone pass over the workspace; with one
    it is the classifying phase of an import and hands over to voice learning
    once nothing is left.
    """
    require(payload, "workspace_id")
    conn = ctx.conn
    workspace_id = payload["workspace_id"]
    job_id = payload.get("job_id")
    job = None
    if job_id:
        job = load_active_job(conn, "import", job_id)
        if job is None:
            return cancelled()
        if past_phase("import", job, "classifying"):
            return {"success": True, "skipped": True, "status": job["status"]}
        if not advance_status(conn, "import", job_id, "classifying"):
            return cancelled("superseded")

    provider, model = ctx.ai()
    tc = ctx.config.triage
    counts = classify_conversations(
        conn, workspace_id, provider, model,
        batch_size=ctx.config.pipeline.classify_batch_size,
        llm_batch_size=ctx.config.pipeline.llm_batch_size,
        rule_min_confidence=tc.rule_min_confidence,
        few_shot_corrections=tc.few_shot_corrections,
    )

    if job is not None:
        total = conn.execute(
            """SELECT COUNT(*) AS cnt FROM conversations
               WHERE workspace_id = ? AND decision_bucket IS NOT NULL""",
            (workspace_id,),
        ).fetchone()["cnt"]
        heartbeat(conn, "import", job_id, conversations_classified=total)

    # A pass that classified nothing without being rate limited cannot make progress
    more = counts["remaining"] > 0 and (counts["classified"] > 0 or counts["rate_limited"])
    if more:
        continue_later(
            ctx, "email-classify", payload,
            delay_seconds=30 if counts["rate_limited"] else 0,
            stalled=counts["rate_limited"] and counts["classified"] == 0,
        )
        return {"success": True, "continuing": True, **counts}

    if job is not None:
        if not advance_status(conn, "import", job_id, "learning"):
            return cancelled("superseded")
        update_provider_config(conn, job["config_id"], sync_stage="learning")
        ctx.dispatch(
            "voice-learning",
            {"workspace_id": workspace_id, "job_id": job_id,
             "config_id": job["config_id"], "force_refresh": True},
        )
    logger.info(
        "classification finished: %d this pass", counts["classified"],
        extra={"workspace_id": workspace_id, "job_id": job_id},
    )
    return {"success": True, "continuing": False, **counts}


def bootstrap_sender_rules(ctx: HandlerContext, payload: dict) -> dict:
    require(payload, "workspace_id")
    tc = ctx.config.triage
    result = bootstrap_rules(
        ctx.conn, payload["workspace_id"],
        min_email_count=int(payload.get("min_email_count") or tc.bootstrap_min_email_count),
        auto_create_confidence=tc.auto_create_confidence,
        max_suggestions=tc.max_suggestions,
    )
    return {"success": True, **result}


def save_classification_correction(ctx: HandlerContext, payload: dict) -> dict:
    """Apply an owner's correction to one conversation, optionally teaching a sender rule."""
    require(payload, "workspace_id", "conversation_id", "classification", "bucket")
    scope = payload.get("scope") or "conversation"
    if scope not in ("conversation", "sender"):
        raise ConfigurationError("scope must be 'conversation' or 'sender'")
    correction_id = record_correction(
        ctx.conn,
        payload["workspace_id"],
        int(payload["conversation_id"]),
        classification=payload["classification"],
        bucket=payload["bucket"],
        requires_reply=bool(payload.get("requires_reply")),
        scope=scope,
    )
    return {"success": True, "correction_id": correction_id}
