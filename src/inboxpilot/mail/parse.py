"""Normalise provider message records and extract readable bodies."""

from __future__ import annotations

import json
import re
from datetime import timezone

MAX_BODY_CHARS = 50_000

_QUOTE_MARKERS = [
    re.compile(r"^On .+ wrote:\s*$", re.MULTILINE),
    re.compile(r"^-{2,}\s*Original Message", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^>+\s", re.MULTILINE),
]


def strip_html(html: str) -> str:
    """Return the visible text of an HTML fragment, whitespace collapsed."""
    from bs4 import BeautifulSoup

    soup = BeautifulSoup(html, "lxml")
    for tag in soup.find_all(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def strip_quoted(text: str) -> str:
    """Cut a reply at the first quoted-history marker."""
    for pattern in _QUOTE_MARKERS:
        text = pattern.split(text, maxsplit=1)[0]
    return text.strip()


def extract_body(message: dict) -> str:
    """Plain-text body of a full message record without quoted history.

    Falls back to the unstripped body when stripping leaves almost nothing.
    """
    body_field = message.get("body") if isinstance(message.get("body"), dict) else {}
    body = message.get("textBody") or body_field.get("text") or ""
    if not body:
        html = message.get("htmlBody") or body_field.get("html") or ""
        if html:
            body = strip_html(html)
    stripped = strip_quoted(body)
    result = stripped if len(stripped) > 10 else body.strip()
    return result[:MAX_BODY_CHARS]


def domain_of(address: str | None) -> str:
    if not address or "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip().lower()


def parse_timestamp(value: str | None) -> str | None:
    """Normalise a provider timestamp to ISO-8601 UTC, or None if unparseable."""
    if not value:
        return None
    from dateutil import parser as dateutil_parser

    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, TypeError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="seconds")


def _address(value) -> tuple[str, str | None]:
    if isinstance(value, dict):
        addr = value.get("address") or value.get("email") or ""
        return addr.strip().lower(), value.get("name")
    if isinstance(value, str):
        return value.strip().lower(), None
    return "", None


def queue_row(record: dict, direction: str) -> dict:
    """Map a message-list record to the columns of ``email_import_queue``."""
    external_id = str(record.get("id", ""))
    from_email, from_name = _address(record.get("from"))
    to_emails = [a for a, _ in (_address(t) for t in record.get("to") or []) if a]
    return {
        "external_id": external_id,
        "thread_id": str(record.get("threadId") or external_id),
        "direction": direction,
        "from_email": from_email,
        "from_name": from_name,
        "to_emails": json.dumps(to_emails),
        "subject": record.get("subject"),
        "snippet": (record.get("snippet") or record.get("bodySnippet") or "")[:500],
        "received_at": parse_timestamp(
            record.get("receivedAt") or record.get("sentAt") or record.get("createdAt")
        ),
    }
