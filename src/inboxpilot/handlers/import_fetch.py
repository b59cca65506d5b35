"""Queue-based mailbox importer: one IMPORT_FETCH job per page.

Each job carries its own cursor (folder, page token) and running totals, so
the chain can be resumed from the last job's payload alone. Every outcome is
written to ``pipeline_job_audit`` under a dedupe key derived from the cursor;
a job whose key was already processed is dropped as a duplicate.
"""

from __future__ import annotations

import logging

from inboxpilot.errors import TRANSIENT_ERRORS, ConfigurationError, RateLimitError
from inboxpilot.handlers.base import HandlerContext, load_provider_config, require
from inboxpilot.jobs.runs import (
    already_processed,
    audit_job,
    compute_dedupe_key,
    create_run,
    get_run,
    record_incident,
    touch_pipeline_run,
)
from inboxpilot.mail.ingest import upsert_queue_rows
from inboxpilot.models import ImportFetchJob, job_from_dict
from inboxpilot.retry import backoff_seconds

logger = logging.getLogger(__name__)

FOLDER_DIRECTION = {"SENT": "outbound", "INBOX": "inbound"}
MAX_REQUEUE_DELAY = 300


def clamp_cap(value, default: int, maximum: int) -> int:
    try:
        cap = int(value) if value is not None else default
    except (TypeError, ValueError):
        cap = default
    return max(1, min(maximum, cap))


def job_dedupe_key(job: ImportFetchJob) -> str:
    """Key on the cursor only; requeued copies of the same page share it."""
    return compute_dedupe_key("IMPORT_FETCH", {
        "run_id": job.run_id,
        "folder": job.folder,
        "page_token": job.page_token,
        "fetched_so_far": job.fetched_so_far,
    })


def start_import(ctx: HandlerContext, payload: dict) -> dict:
    """Claim the running pipeline run for a mailbox and queue the first page."""
    require(payload, "workspace_id", "config_id")
    conn = ctx.conn
    workspace_id, config_id = payload["workspace_id"], payload["config_id"]
    provider_config = load_provider_config(conn, config_id)
    if provider_config["workspace_id"] != workspace_id:
        raise ConfigurationError("Email provider config belongs to another workspace")

    pc = ctx.config.pipeline
    cap = clamp_cap(payload.get("cap"), pc.import_default_cap, pc.import_max_cap)
    mode = payload.get("mode") or "onboarding"
    run_id, created = create_run(
        conn, workspace_id, config_id, channel="email", mode=mode, params={"cap": cap},
    )
    if not created:
        logger.info("import already running", extra={"run_id": run_id, "workspace_id": workspace_id})
        return {"success": True, "run_id": run_id, "already_running": True}

    first = ImportFetchJob(workspace_id=workspace_id, run_id=run_id, config_id=config_id, cap=cap)
    ctx.dispatch("pipeline-worker-import", first.to_dict())
    logger.info("import run started (cap %d)", cap, extra={"run_id": run_id, "workspace_id": workspace_id})
    return {"success": True, "run_id": run_id, "cap": cap, "already_running": False}


def _next_job(job: ImportFetchJob, next_token: str | None, fetched: int) -> ImportFetchJob | None:
    if next_token:
        folder, token = job.folder, next_token
    elif job.folder == "SENT":
        folder, token = "INBOX", None
    else:
        return None
    return ImportFetchJob(
        workspace_id=job.workspace_id, run_id=job.run_id, config_id=job.config_id,
        folder=folder, page_token=token, cap=job.cap,
        fetched_so_far=fetched, pages=job.pages + 1,
    )


def _finish(conn, job: ImportFetchJob, reason: str, metrics: dict | None = None) -> None:
    touch_pipeline_run(
        conn, job.run_id,
        {**(metrics or {}), "import_done": True, "import_done_reason": reason},
        state="completed",
    )
    logger.info("import finished: %s", reason, extra={"run_id": job.run_id})


def import_fetch(ctx: HandlerContext, payload: dict) -> dict:
    """Fetch one page for an import run and queue the next job."""
    conn = ctx.conn
    try:
        job = job_from_dict(payload)
        if not isinstance(job, ImportFetchJob):
            raise ValueError(f"Expected IMPORT_FETCH, got {payload.get('job_type')!r}")
        if job.folder not in FOLDER_DIRECTION:
            raise ValueError(f"Unknown folder {job.folder!r}")
        job.run_id = int(job.run_id)
    except (ValueError, TypeError) as e:
        logger.warning("discarding invalid import job: %s", e)
        audit_job(
            conn, payload.get("workspace_id"), None, str(payload.get("job_type")),
            compute_dedupe_key("INVALID", payload), payload, "discarded", error=str(e),
        )
        return {"success": False, "discarded": True, "error": str(e)}

    dedupe_key = job_dedupe_key(job)
    data = job.to_dict()
    log_extra = {"run_id": job.run_id, "workspace_id": job.workspace_id}

    if already_processed(conn, dedupe_key):
        logger.info("duplicate import job dropped", extra=log_extra)
        audit_job(conn, job.workspace_id, job.run_id, job.job_type, dedupe_key, data, "duplicate")
        return {"success": True, "duplicate": True}

    run = get_run(conn, job.run_id)
    if run is None or run["state"] != "running":
        return {"success": True, "stopped": True,
                "reason": "run_not_running" if run is not None else "run_not_found"}

    if job.fetched_so_far >= job.cap:
        _finish(conn, job, "cap_reached", {"fetched_so_far": job.fetched_so_far, "pages": job.pages})
        audit_job(conn, job.workspace_id, job.run_id, job.job_type, dedupe_key, data, "processed")
        return {"success": True, "import_done": True, "reason": "cap_reached"}

    attempts = job.rate_limit_count + 1
    try:
        provider_config = load_provider_config(conn, job.config_id)
        client = ctx.mail_client(provider_config)
        try:
            page = client.list_messages(
                job.folder, job.page_token,
                limit=min(ctx.config.mail.import_page_size, job.cap - job.fetched_so_far),
            )
        finally:
            client.close()
    except TRANSIENT_ERRORS as e:
        return _requeue_or_deadletter(ctx, job, dedupe_key, data, e, attempts)
    except Exception as e:
        logger.exception("import page failed", extra=log_extra)
        touch_pipeline_run(conn, job.run_id, state="failed", last_error=str(e))
        audit_job(conn, job.workspace_id, job.run_id, job.job_type, dedupe_key, data,
                  "failed", error=str(e), attempts=attempts)
        return {"success": False, "error": str(e)}

    records = page["records"][: job.cap - job.fetched_so_far]
    upsert_queue_rows(
        conn, job.workspace_id, job.config_id, None, records, FOLDER_DIRECTION[job.folder],
    )
    fetched = job.fetched_so_far + len(records)
    next_token = page["next_page_token"]
    next_job = _next_job(job, next_token, fetched) if fetched < job.cap else None
    metrics = {
        "fetched_so_far": fetched,
        "pages": job.pages + 1,
        "last_folder": job.folder,
        "last_page_token": job.page_token,
        "next_page_token": next_token,
        "last_page_size": len(records),
        "import_done": next_job is None,
    }

    if next_job is None:
        _finish(conn, job, "cap_reached" if fetched >= job.cap else "no_more_pages", metrics)
    else:
        touch_pipeline_run(conn, job.run_id, metrics)
    audit_job(conn, job.workspace_id, job.run_id, job.job_type, dedupe_key, data,
              "processed", attempts=attempts)
    if next_job is not None:
        ctx.dispatch("pipeline-worker-import", next_job.to_dict())

    return {"success": True, "fetched": len(records), "fetched_so_far": fetched,
            "import_done": next_job is None}


def _requeue_or_deadletter(
    ctx: HandlerContext, job: ImportFetchJob, dedupe_key: str, data: dict, error: Exception, attempts: int
) -> dict:
    conn = ctx.conn
    max_attempts = ctx.config.pipeline.import_max_attempts
    log_extra = {"run_id": job.run_id, "attempt": attempts}

    if attempts > max_attempts:
        message = f"Rate limited {attempts - 1} times, giving up: {error}"
        logger.error("import job dead-lettered", extra=log_extra)
        touch_pipeline_run(conn, job.run_id, state="failed", last_error=message)
        record_incident(
            conn, job.workspace_id, job.run_id, "import_fetch", message,
            context=data, dedupe_minutes=ctx.config.pipeline.incident_dedupe_minutes,
        )
        audit_job(conn, job.workspace_id, job.run_id, job.job_type, dedupe_key, data,
                  "deadlettered", error=str(error), attempts=attempts)
        return {"success": False, "deadlettered": True, "error": message}

    retry_after = error.retry_after_seconds if isinstance(error, RateLimitError) else 0
    delay = min(MAX_REQUEUE_DELAY, max(retry_after, backoff_seconds(attempts)))
    retry = ImportFetchJob(**{**{k: v for k, v in data.items() if k != "job_type"},
                              "rate_limit_count": attempts})
    touch_pipeline_run(conn, job.run_id, {"rate_limit_count": attempts})
    audit_job(conn, job.workspace_id, job.run_id, job.job_type, dedupe_key, data,
              "requeued", error=str(error), attempts=attempts)
    logger.warning("import rate limited, retrying in %ss", delay, extra=log_extra)
    ctx.dispatch("pipeline-worker-import", retry.to_dict(), delay_seconds=delay)
    return {"success": True, "requeued": True, "retry_in_seconds": delay}
