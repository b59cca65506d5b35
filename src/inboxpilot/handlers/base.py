"""Shared plumbing for phase handlers.

Every handler has the signature ``handler(ctx, payload) -> dict``. The
context carries the database connection, configuration, the invoker used to
chain the next phase, and factories for the upstream clients so tests can
substitute mocks.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable

import httpx

from inboxpilot.config import Config
from inboxpilot.database import utcnow
from inboxpilot.errors import (
    TRANSIENT_ERRORS,
    ConfigurationError,
    InboxPilotError,
    InvalidTransitionError,
    MalformedResponseError,
    RateLimitError,
    RetriesExhaustedError,
    ServerError,
)
from inboxpilot.jobs.state import fail_job, get_job, phase_rank

logger = logging.getLogger(__name__)

# Payload key counting consecutive re-dispatches that made no progress
STALLED_KEY = "stalled_passes"


@dataclass
class HandlerContext:
    conn: sqlite3.Connection
    config: Config
    invoker: Any
    provider_factory: Callable[[], tuple[Any, str]] | None = None
    mail_client_factory: Callable[[sqlite3.Row], Any] | None = None
    scraper_factory: Callable[[], Any] | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    _started: float = field(default=0.0, init=False)

    def __post_init__(self):
        self._started = self.clock()

    def time_left(self) -> bool:
        """True while the handler is inside its wall-clock budget."""
        return self.clock() - self._started < self.config.pipeline.max_runtime_seconds

    def ai(self) -> tuple[Any, str]:
        if self.provider_factory is not None:
            return self.provider_factory()
        from inboxpilot.ai import get_provider
        return get_provider(self.config.ai.model_spec, self.config.ai.to_provider_dict())

    def mail_client(self, provider_config: sqlite3.Row):
        if self.mail_client_factory is not None:
            return self.mail_client_factory(provider_config)
        if not provider_config["access_token"]:
            raise ConfigurationError("Email provider has no access token")
        from inboxpilot.mail.client import MailProviderClient
        from inboxpilot.retry import mail_fetch_retry
        return MailProviderClient(
            provider_config["access_token"],
            base_url=self.config.mail.base_url,
            timeout=self.config.mail.timeout_seconds,
            body_retry=mail_fetch_retry(self.config.mail.fetch_retry_delays),
        )

    def scraper(self):
        if self.scraper_factory is not None:
            return self.scraper_factory()
        from inboxpilot.scrape.client import ScraperClient
        return ScraperClient(
            self.config.scraper.api_key,
            base_url=self.config.scraper.base_url,
            timeout=self.config.scraper.timeout_seconds,
        )

    def dispatch(self, name: str, payload: dict, delay_seconds: float = 0) -> None:
        self.invoker.dispatch(name, payload, delay_seconds=delay_seconds)


def require(payload: dict, *keys: str) -> None:
    missing = [k for k in keys if not payload.get(k)]
    if missing:
        raise ConfigurationError(f"Missing required field(s): {', '.join(missing)}")


def load_provider_config(conn: sqlite3.Connection, config_id: str) -> sqlite3.Row:
    row = conn.execute(
        "SELECT * FROM email_provider_configs WHERE id = ?", (config_id,)
    ).fetchone()
    if row is None:
        raise ConfigurationError(f"Email provider config {config_id} not found")
    return row


def connected_addresses(provider_config: sqlite3.Row) -> set[str]:
    """The mailbox address plus any aliases, lower-cased."""
    addresses = set()
    if provider_config["email_address"]:
        addresses.add(provider_config["email_address"].lower())
    try:
        aliases = json.loads(provider_config["aliases"] or "[]")
    except json.JSONDecodeError:
        aliases = []
    addresses.update(a.lower() for a in aliases if isinstance(a, str))
    return addresses


def update_provider_config(conn: sqlite3.Connection, config_id: str, **fields) -> None:
    if not fields:
        return
    fields["updated_at"] = utcnow()
    set_sql = ", ".join(f"{col} = ?" for col in fields)
    conn.execute(
        f"UPDATE email_provider_configs SET {set_sql} WHERE id = ?",
        (*fields.values(), config_id),
    )
    conn.commit()


def surface_sync_error(conn: sqlite3.Connection, config_id: str | None, message: str) -> None:
    """Show a fatal import error on the mailbox so the owner can act on it."""
    if config_id:
        update_provider_config(conn, config_id, sync_status="error", sync_error=message[:500])


def cancelled(reason: str = "cancelled") -> dict:
    return {"success": True, "cancelled": True, "reason": reason}


def continue_later(
    ctx: HandlerContext,
    name: str,
    payload: dict,
    delay_seconds: float = 0,
    stalled: bool = False,
) -> None:
    """Re-dispatch ``name`` with ``resume`` set.

    A ``stalled`` pass hit an upstream limit before making any progress.
    Consecutive stalled passes are counted in the payload; once there are
    more than ``pipeline.max_retries`` of them this raises
    RetriesExhaustedError instead of dispatching. A pass that made progress
    resets the count.
    """
    attempts = int(payload.get(STALLED_KEY) or 0) + 1 if stalled else 0
    limit = ctx.config.pipeline.max_retries
    if attempts > limit:
        raise RetriesExhaustedError(
            f"{name}: upstream still rate limited or out of quota after {limit} retries"
        )
    next_payload = {k: v for k, v in payload.items() if k != STALLED_KEY}
    next_payload["resume"] = True
    if attempts:
        next_payload[STALLED_KEY] = attempts
    ctx.dispatch(name, next_payload, delay_seconds=delay_seconds)


def past_phase(kind: str, job: sqlite3.Row, status: str) -> bool:
    """True when the job has already moved beyond ``status`` (a late or duplicate call)."""
    return phase_rank(kind, job["status"]) > phase_rank(kind, status)


def job_phase(kind: str, self_name: str):
    """Wrap a phase handler with the shared error policy.

    Transient upstream failures re-dispatch the same phase after a delay and
    leave the job where it is, up to ``pipeline.max_retries`` times in a row.
    Malformed model output is reported without failing the job, so the
    watchdog can retry it. Any other pipeline error, including exhausted
    retries, moves the job to ``error`` and, for imports, surfaces it on the
    mailbox.
    """
    def decorator(func):
        def fail(ctx: HandlerContext, payload: dict, e: InboxPilotError, log_extra: dict) -> dict:
            logger.error("phase failed: %s", e, extra=log_extra)
            job_id = payload.get("job_id")
            if job_id:
                config_id = payload.get("config_id")
                if kind == "import" and not config_id:
                    row = get_job(ctx.conn, kind, job_id)
                    config_id = row["config_id"] if row is not None else None
                fail_job(ctx.conn, kind, job_id, str(e))
                if kind == "import":
                    surface_sync_error(ctx.conn, config_id, str(e))
            return {"success": False, "error": str(e)}

        @wraps(func)
        def wrapper(ctx: HandlerContext, payload: dict) -> dict:
            log_extra = {"handler": self_name, "job_id": payload.get("job_id"),
                         "workspace_id": payload.get("workspace_id")}
            try:
                return func(ctx, payload)
            except (*TRANSIENT_ERRORS, ServerError, httpx.TransportError, ConnectionError) as e:
                delay = getattr(e, "retry_after_seconds", 30) if isinstance(e, RateLimitError) else 30
                try:
                    continue_later(ctx, self_name, payload, delay, stalled=True)
                except RetriesExhaustedError as exhausted:
                    return fail(ctx, payload, exhausted, log_extra)
                logger.warning("transient failure, re-dispatching in %ss: %s", delay, e, extra=log_extra)
                return {"success": True, "rate_limited": True, "retry_in_seconds": delay}
            except InvalidTransitionError as e:
                logger.warning("skipping stale invocation: %s", e, extra=log_extra)
                return {"success": True, "skipped": True, "reason": str(e)}
            except MalformedResponseError as e:
                logger.error("unusable model output: %s", e, extra=log_extra)
                return {"success": False, "error": str(e)}
            except InboxPilotError as e:
                return fail(ctx, payload, e, log_extra)
        return wrapper
    return decorator
