"""Reply draft handlers: generate, verify and learn from the owner's edits."""

from __future__ import annotations

from inboxpilot.drafts import generate_draft, verify_draft
from inboxpilot.errors import ConfigurationError
from inboxpilot.handlers.base import HandlerContext, require
from inboxpilot.triage.corrections import record_draft_edit


def _optional_int(payload: dict, key: str) -> int | None:
    value = payload.get(key)
    return int(value) if value is not None else None


def ai_draft(ctx: HandlerContext, payload: dict) -> dict:
    """Draft a reply for one conversation; with ``verify`` the check runs next."""
    require(payload, "workspace_id", "conversation_id")
    provider, model = ctx.ai()
    dc = ctx.config.drafts
    result = generate_draft(
        ctx.conn, payload["workspace_id"], int(payload["conversation_id"]), provider, model,
        faq_limit=dc.faq_context,
        edit_examples=dc.edit_examples,
    )
    if payload.get("verify"):
        ctx.dispatch(
            "draft-verify",
            {"workspace_id": payload["workspace_id"],
             "conversation_id": int(payload["conversation_id"]),
             "draft_id": result["draft_id"]},
        )
        result = {**result, "verification_queued": True}
    return result


def draft_verify(ctx: HandlerContext, payload: dict) -> dict:
    require(payload, "workspace_id")
    if not payload.get("draft_id") and not payload.get("draft"):
        raise ConfigurationError("draft_id or draft is required")
    provider, model = ctx.ai()
    return verify_draft(
        ctx.conn, payload["workspace_id"], provider, model,
        conversation_id=_optional_int(payload, "conversation_id"),
        draft=payload.get("draft"),
        draft_id=_optional_int(payload, "draft_id"),
        customer_message=payload.get("customer_message"),
        faq_limit=ctx.config.drafts.verify_faq_context,
    )


def learn_from_edit(ctx: HandlerContext, payload: dict) -> dict:
    """Record the reply the owner actually sent in place of a draft."""
    require(payload, "workspace_id", "final_sent", "inbound_message")
    return record_draft_edit(
        ctx.conn,
        payload["workspace_id"],
        final_sent=payload["final_sent"],
        inbound_message=payload["inbound_message"],
        original_draft=payload.get("original_draft") or "",
        conversation_id=_optional_int(payload, "conversation_id"),
        draft_id=_optional_int(payload, "draft_id"),
        min_similarity=ctx.config.drafts.learn_similarity,
    )
