"""Tests for message record normalisation and body extraction."""

import json

import pytest

from inboxpilot.mail.parse import domain_of, extract_body, parse_timestamp, queue_row, strip_html, strip_quoted


class TestExtractBody:
    def test_strips_quoted_history(self):
        message = {
            "textBody": (
                "Tuesday at 10 works for me, see you then.\n\n"
                "On Mon, 6 May 2024 at 09:12, Sam <owner@flowplumbing.co.uk> wrote:\n"
                "> Would Tuesday suit?\n"
            )
        }
        assert extract_body(message) == "Tuesday at 10 works for me, see you then."

    def test_original_message_marker(self):
        body = "Please send the invoice.\n-----Original Message-----\nFrom: someone"
        assert extract_body({"textBody": body}) == "Please send the invoice."

    def test_html_fallback(self):
        message = {"htmlBody": "<html><head><style>p{}</style></head><body><p>Boiler is <b>leaking</b> again</p>"
                               "<script>track()</script></body></html>"}
        assert extract_body(message) == "Boiler is leaking again"

    def test_nested_body_field(self):
        assert extract_body({"body": {"text": "Can you quote for a new radiator?"}}) == (
            "Can you quote for a new radiator?"
        )

    def test_keeps_unstripped_body_when_reply_is_tiny(self):
        body = "Ok\nOn Mon, 6 May 2024, Sam wrote:\n> Shall I book you in for Friday morning?"
        assert extract_body({"textBody": body}) == body.strip()

    def test_empty_message(self):
        assert extract_body({}) == ""

    def test_long_body_truncated(self):
        assert len(extract_body({"textBody": "x" * 60_000})) == 50_000


def test_strip_quoted_plain_text_untouched():
    assert strip_quoted("  Just checking in.  ") == "Just checking in."


def test_strip_html_collapses_whitespace():
    assert strip_html("<div>\n  Hello\n\n   <span>world</span></div>") == "Hello world"


@pytest.mark.parametrize("value,expected", [
    ("2024-03-01T09:15:00.000Z", "2024-03-01T09:15:00+00:00"),
    ("2024-03-01T10:15:00+01:00", "2024-03-01T09:15:00+00:00"),
    ("Fri, 01 Mar 2024 09:15:00 +0000", "2024-03-01T09:15:00+00:00"),
    ("2024-03-01 09:15:00", "2024-03-01T09:15:00+00:00"),
    ("not a date", None),
    (None, None),
])
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected


@pytest.mark.parametrize("address,domain", [
    ("Jane@Acme.COM", "acme.com"),
    ("weird@sub@host.org", "host.org"),
    ("no-at-sign", ""),
    (None, ""),
])
def test_domain_of(address, domain):
    assert domain_of(address) == domain


class TestQueueRow:
    def test_maps_record(self):
        record = {
            "id": 123,
            "threadId": "th-9",
            "from": {"address": " Jo@Client.com ", "name": "Jo Bloggs"},
            "to": [{"address": "Owner@FlowPlumbing.co.uk"}, "hello@flowplumbing.co.uk", {"name": "no address"}],
            "subject": "Leaking tap",
            "bodySnippet": "Hi, my kitchen tap...",
            "receivedAt": "2024-03-01T09:15:00Z",
        }
        row = queue_row(record, "inbound")
        assert row["external_id"] == "123"
        assert row["thread_id"] == "th-9"
        assert row["from_email"] == "jo@client.com"
        assert row["from_name"] == "Jo Bloggs"
        assert json.loads(row["to_emails"]) == ["owner@flowplumbing.co.uk", "hello@flowplumbing.co.uk"]
        assert row["snippet"] == "Hi, my kitchen tap..."
        assert row["received_at"] == "2024-03-01T09:15:00+00:00"
        assert row["direction"] == "inbound"

    def test_thread_defaults_to_message_id(self):
        row = queue_row({"id": "m1", "from": "jo@client.com", "sentAt": "2024-03-01T09:15:00Z"}, "outbound")
        assert row["thread_id"] == "m1"
        assert row["from_email"] == "jo@client.com"
        assert row["from_name"] is None
        assert row["received_at"] == "2024-03-01T09:15:00+00:00"
