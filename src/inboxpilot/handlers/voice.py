"""Voice learning and style-drift handlers."""

from __future__ import annotations

import logging

from inboxpilot.database import utcnow
from inboxpilot.handlers.base import (
    HandlerContext,
    cancelled,
    job_phase,
    require,
    update_provider_config,
)
from inboxpilot.jobs.state import advance_status, load_active_job
from inboxpilot.voice import detect_style_drift as detect_drift
from inboxpilot.voice import learn_voice

logger = logging.getLogger(__name__)


@job_phase("import", "voice-learning")
def voice_learning(ctx: HandlerContext, payload: dict) -> dict:
    """Learn the voice profile; as the last import phase, complete the job.

    Too few reply pairs is not an import failure: the job still completes and
    the result carries ``reason: insufficient_data``.
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
        if not advance_status(conn, "import", job_id, "learning"):
            return cancelled("superseded")

    provider, model = ctx.ai()
    vc = ctx.config.voice
    result = learn_voice(
        conn, workspace_id, provider, model,
        force_refresh=bool(payload.get("force_refresh")),
        min_pairs=vc.min_pairs,
        max_pairs=vc.max_pairs,
        refresh_hours=vc.refresh_hours,
    )

    if job is not None:
        now = utcnow()
        if not advance_status(conn, "import", job_id, "completed", completed_at=now):
            return cancelled("superseded")
        update_provider_config(
            conn, job["config_id"],
            sync_status="completed", sync_stage="complete",
            sync_error=None, sync_completed_at=now,
        )
        logger.info("import completed", extra={"job_id": job_id, "workspace_id": workspace_id})
        result = {**result, "job_completed": True}
    return result


@job_phase("import", "detect-style-drift")
def detect_style_drift(ctx: HandlerContext, payload: dict) -> dict:
    """Check recent owner mail against the profile; relearn when it has drifted.

    Runs outside any import job, so failures are reported in the result and
    there is no job or mailbox status to update.
    """
    require(payload, "workspace_id")
    provider, model = ctx.ai()
    vc = ctx.config.voice
    result = detect_drift(
        ctx.conn, payload["workspace_id"], provider, model,
        threshold=vc.drift_threshold,
        sample_size=vc.drift_sample_size,
        min_emails=vc.drift_min_emails,
    )
    if result.get("refresh_triggered"):
        ctx.dispatch(
            "voice-learning",
            {"workspace_id": payload["workspace_id"], "force_refresh": True},
        )
    return result
