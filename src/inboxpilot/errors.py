"""Exception taxonomy shared by handlers, clients and the HTTP layer."""

from __future__ import annotations

import time
from email.utils import parsedate_to_datetime


class InboxPilotError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500


class ConfigurationError(InboxPilotError):
    """Missing API key, workspace, provider config or token. Never retried."""

    status_code = 400


class NotFoundError(InboxPilotError):
    status_code = 404


class JobNotFoundError(NotFoundError):
    pass


class InvalidTransitionError(InboxPilotError):
    """Raised when a status change would move a job backward or out of a terminal state."""

    status_code = 409


class HttpError(InboxPilotError):
    """Non-success response from an upstream HTTP API."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class AuthError(HttpError):
    """Upstream rejected our credentials (401). Fatal for the job."""

    def __init__(self, message: str = "Token expired - please reconnect email"):
        super().__init__(401, message)


class RateLimitError(HttpError):
    """Upstream returned 429. The batch stops and the job stays in its phase."""

    def __init__(self, message: str, retry_after_seconds: int = 30):
        super().__init__(429, message)
        self.retry_after_seconds = retry_after_seconds


class QuotaExceededError(HttpError):
    """Upstream returned 402 (credits exhausted). Treated like a rate limit."""

    def __init__(self, message: str):
        super().__init__(402, message)


class ServerError(HttpError):
    """5xx from upstream. Retried, never fatal."""


class MalformedResponseError(InboxPilotError):
    """An LLM or API returned output we could not parse."""


class RetriesExhaustedError(InboxPilotError):
    """A phase kept hitting upstream limits without making progress. Fatal for the job."""


# Errors that abort a batch without failing the job.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (RateLimitError, QuotaExceededError)


def parse_retry_after(value: str | None, fallback: int = 30) -> int:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return fallback
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return fallback
    diff = int(when.timestamp() - time.time())
    return diff if diff > 0 else fallback


def raise_for_status(status: int, body: str, retry_after: str | None = None) -> None:
    """Map an upstream HTTP status to the exception taxonomy."""
    if status < 400:
        return
    snippet = body[:200] if body else ""
    if status == 401:
        raise AuthError()
    if status == 402:
        raise QuotaExceededError(f"Upstream quota exceeded: {snippet}")
    if status == 429:
        raise RateLimitError(f"Rate limited: {snippet}", parse_retry_after(retry_after))
    if status >= 500:
        raise ServerError(status, f"Upstream server error {status}: {snippet}")
    raise HttpError(status, f"Upstream API error {status}: {snippet}")
