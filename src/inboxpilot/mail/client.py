"""Mail provider API wrapper: message pages and single messages."""

from __future__ import annotations

import logging

import httpx

from inboxpilot.errors import raise_for_status
from inboxpilot.retry import MAIL_FETCH_RETRY, NETWORK_RETRY, RetryConfig, with_retry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.aurinko.io/v1"


class MailProviderClient:
    """Thin httpx client for a unified mailbox API.

    Every non-2xx response is mapped through :func:`raise_for_status`, so
    callers see AuthError, RateLimitError, QuotaExceededError, ServerError or
    HttpError instead of raw responses.
    """

    def __init__(
        self,
        access_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        body_retry: RetryConfig = MAIL_FETCH_RETRY,
        http_client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.body_retry = body_retry
        self._client = http_client or httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> MailProviderClient:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _get(self, path: str, params: dict | None = None) -> dict:
        resp = self._client.get(f"{self.base_url}{path}", params=params)
        raise_for_status(resp.status_code, resp.text, resp.headers.get("retry-after"))
        return resp.json()

    def list_messages(
        self, folder: str, page_token: str | None = None, limit: int = 50
    ) -> dict:
        """Fetch one page of message headers from ``folder`` (INBOX or SENT).

        Returns ``{"records": [...], "next_page_token": str | None}``.
        """
        params: dict = {"folder": folder, "limit": limit}
        if page_token:
            params["pageToken"] = page_token
        data = with_retry(NETWORK_RETRY)(self._get)("/email/messages", params)
        return {
            "records": data.get("records") or [],
            "next_page_token": data.get("nextPageToken") or None,
        }

    def get_message(self, external_id: str) -> dict:
        """Fetch one full message, retrying 429, 5xx and network failures.

        Other 4xx responses raise HttpError immediately.
        """
        return with_retry(self.body_retry)(self._get)(f"/email/messages/{external_id}")
