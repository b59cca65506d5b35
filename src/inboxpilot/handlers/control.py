"""Operator handlers: job cancellation and the watchdog passes."""

from __future__ import annotations

from inboxpilot.errors import ConfigurationError, JobNotFoundError
from inboxpilot.handlers.base import HandlerContext, require, update_provider_config
from inboxpilot.jobs.state import JOB_TABLES, cancel_job as cancel, get_job
from inboxpilot.watchdog import run_import_watchdog, run_pipeline_supervisor, run_research_watchdog


def cancel_job(ctx: HandlerContext, payload: dict) -> dict:
    """Cancel an import or research job. Running handlers stop at their next check."""
    require(payload, "job_id")
    kind = payload.get("kind") or "import"
    if kind not in JOB_TABLES:
        raise ConfigurationError(f"Unknown job kind: {kind}")
    job = get_job(ctx.conn, kind, payload["job_id"])
    if job is not None and payload.get("workspace_id") not in (None, job["workspace_id"]):
        raise JobNotFoundError(f"{kind} job {payload['job_id']} not found")
    changed = cancel(ctx.conn, kind, payload["job_id"])
    if changed and kind == "import":
        update_provider_config(ctx.conn, job["config_id"], sync_status="idle", sync_stage="cancelled")
    return {"success": True, "cancelled": changed, "job_id": payload["job_id"]}


def import_watchdog(ctx: HandlerContext, payload: dict) -> dict:
    return {"success": True, **run_import_watchdog(ctx.conn, ctx.invoker, ctx.config)}


def competitor_research_watchdog(ctx: HandlerContext, payload: dict) -> dict:
    return {"success": True, **run_research_watchdog(ctx.conn, ctx.invoker, ctx.config)}


def pipeline_supervisor(ctx: HandlerContext, payload: dict) -> dict:
    return {"success": True, **run_pipeline_supervisor(ctx.conn, ctx.invoker, ctx.config)}
