"""Shared test fixtures."""

from __future__ import annotations

import json
import sqlite3
from collections import deque
from unittest.mock import MagicMock

import pytest

from inboxpilot.config import Config
from inboxpilot.database import init_db, utcnow
from inboxpilot.handlers.base import HandlerContext


@pytest.fixture
def db():
    """In-memory SQLite database with schema initialized."""
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def config():
    """Default configuration with every pacing delay switched off."""
    cfg = Config()
    cfg.mail.request_delay_seconds = 0
    cfg.scraper.page_delay_seconds = 0
    cfg.pipeline.max_runtime_seconds = 3600
    return cfg


@pytest.fixture
def workspace(db):
    """A plumbing business with one connected mailbox (plus an alias)."""
    db.execute(
        """INSERT INTO workspaces (id, name, industry, service_area, tone_description)
           VALUES ('ws1', 'Flow Plumbing', 'plumbing', 'Leeds', 'warm and direct')"""
    )
    db.execute(
        """INSERT INTO email_provider_configs
           (id, workspace_id, email_address, aliases, access_token)
           VALUES ('cfg1', 'ws1', 'owner@flowplumbing.co.uk', ?, 'token-1')""",
        (json.dumps(["hello@flowplumbing.co.uk"]),),
    )
    db.commit()
    return {"workspace_id": "ws1", "config_id": "cfg1"}


@pytest.fixture
def invoker():
    """Stands in for the invoker; records dispatches without running them."""
    return MagicMock()


@pytest.fixture
def make_ctx(db, config, invoker):
    """Build a HandlerContext wired to fakes for the AI provider, mailbox and scraper."""
    def _make(provider=None, mailbox=None, scraper=None, model="test-model"):
        return HandlerContext(
            conn=db,
            config=config,
            invoker=invoker,
            provider_factory=lambda: (provider if provider is not None else MagicMock(), model),
            mail_client_factory=lambda provider_config: mailbox,
            scraper_factory=lambda: scraper,
            sleep=lambda seconds: None,
        )
    return _make


@pytest.fixture
def chain(db, config):
    """Factory for a ChainRunner on the test database."""
    def _make(**factories):
        return ChainRunner(db, config, **factories)
    return _make


def dispatched(invoker) -> list[tuple[str, dict, float]]:
    """(handler name, payload, delay) for every dispatch recorded on a mock invoker."""
    return [
        (c.args[0], c.args[1], c.kwargs.get("delay_seconds", 0))
        for c in invoker.dispatch.call_args_list
    ]


class ChainRunner:
    """Runs dispatched handlers in order on one connection, ignoring delays."""

    def __init__(self, conn, config, **factories):
        self.conn = conn
        self.config = config
        self.factories = factories
        self.queue: deque = deque()
        self.history: list[str] = []

    def ctx(self) -> HandlerContext:
        return HandlerContext(
            conn=self.conn, config=self.config, invoker=self,
            sleep=lambda seconds: None, **self.factories,
        )

    def dispatch(self, name: str, payload: dict, delay_seconds: float = 0) -> None:
        self.queue.append((name, payload, delay_seconds))

    def drain(self, max_steps: int = 200) -> list[dict]:
        from inboxpilot.handlers import HANDLERS

        results = []
        while self.queue and len(results) < max_steps:
            name, payload, _ = self.queue.popleft()
            self.history.append(name)
            results.append(HANDLERS[name](self.ctx(), payload))
        return results

    def run(self, name: str, payload: dict, max_steps: int = 200) -> list[dict]:
        from inboxpilot.handlers import HANDLERS

        self.history.append(name)
        return [HANDLERS[name](self.ctx(), payload), *self.drain(max_steps)]


class FakeMailbox:
    """Mailbox API double: each folder is a list of pages of message records.

    Page tokens are page indexes as strings. ``bodies`` maps a message id to
    its text, or to an exception that get_message raises.
    """

    def __init__(self, folders: dict | None = None, bodies: dict | None = None):
        self.folders = folders or {}
        self.bodies = bodies or {}
        self.list_errors: dict = {}
        self.list_calls: list[tuple] = []
        self.get_calls: list[str] = []
        self.closed = 0

    def list_messages(self, folder, page_token=None, limit=50):
        self.list_calls.append((folder, page_token, limit))
        error = self.list_errors.pop((folder, page_token), None)
        if error is not None:
            raise error
        pages = self.folders.get(folder, [])
        index = int(page_token) if page_token else 0
        if index >= len(pages):
            return {"records": [], "next_page_token": None}
        next_token = str(index + 1) if index + 1 < len(pages) else None
        return {"records": pages[index][:limit], "next_page_token": next_token}

    def get_message(self, external_id):
        self.get_calls.append(external_id)
        body = self.bodies.get(external_id, f"Message body for {external_id}, thanks.")
        if isinstance(body, Exception):
            raise body
        return {"id": external_id, "textBody": body}

    def close(self):
        self.closed += 1


def mail_record(msg_id: str, thread_id: str, sender: str, received_at: str = "2024-05-01T09:00:00Z",
                name: str | None = None, to: str = "owner@flowplumbing.co.uk", subject: str = "Hello") -> dict:
    """A message-list record as the mailbox API returns it."""
    return {
        "id": msg_id,
        "threadId": thread_id,
        "from": {"address": sender, "name": name},
        "to": [{"address": to}],
        "subject": subject,
        "snippet": f"{subject} snippet",
        "receivedAt": received_at,
    }


def page_of(prefix: str, count: int, sender: str = "customer@example.com") -> list[dict]:
    return [mail_record(f"{prefix}-{i}", f"{prefix}-t{i}", sender) for i in range(count)]


def insert_import_job(db, job_id: str = "job1", status: str = "queued", workspace_id: str = "ws1",
                      config_id: str = "cfg1", heartbeat_at: str | None = None, retry_count: int = 0) -> str:
    db.execute(
        """INSERT INTO email_import_jobs
           (id, workspace_id, config_id, status, checkpoint, heartbeat_at, retry_count,
            started_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (job_id, workspace_id, config_id, status,
         json.dumps({"phase": "inbox", "page_token": None}),
         heartbeat_at or utcnow(), retry_count, utcnow(), utcnow()),
    )
    db.commit()
    return job_id


def insert_research_job(db, job_id: str = "rjob1", status: str = "queued", workspace_id: str = "ws1",
                        heartbeat_at: str | None = None, retry_count: int = 0, target_count: int = 10) -> str:
    db.execute(
        """INSERT INTO competitor_research_jobs
           (id, workspace_id, niche_query, service_area, target_count, status,
            heartbeat_at, retry_count, started_at)
           VALUES (?, ?, 'emergency plumber', 'Leeds', ?, ?, ?, ?, ?)""",
        (job_id, workspace_id, target_count, status, heartbeat_at or utcnow(), retry_count, utcnow()),
    )
    db.commit()
    return job_id


def insert_conversation(db, thread_id: str, sender: str, workspace_id: str = "ws1",
                        replied: bool = False, created_at: str = "2024-05-01T09:00:00+00:00") -> int:
    """A conversation with one customer message and, optionally, an owner reply."""
    domain = sender.rsplit("@", 1)[1]
    cur = db.execute(
        """INSERT INTO conversations
           (workspace_id, thread_id, sender_email, sender_domain, title, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (workspace_id, thread_id, sender, domain, f"Subject {thread_id}", created_at, created_at),
    )
    conversation_id = cur.lastrowid
    db.execute(
        """INSERT INTO messages
           (conversation_id, external_id, direction, actor_type, from_email, body, body_clean, created_at)
           VALUES (?, ?, 'inbound', 'customer', ?, ?, ?, ?)""",
        (conversation_id, f"{thread_id}-in", sender, "Can you come and look at my boiler?",
         "Can you come and look at my boiler?", created_at),
    )
    if replied:
        db.execute(
            """INSERT INTO messages
               (conversation_id, external_id, direction, actor_type, from_email, body, body_clean, created_at)
               VALUES (?, ?, 'outbound', 'human_agent', 'owner@flowplumbing.co.uk', ?, ?, ?)""",
            (conversation_id, f"{thread_id}-out", "Hiya, I can pop round Tuesday. Cheers, Sam",
             "Hiya, I can pop round Tuesday. Cheers, Sam", "2024-05-01T11:00:00+00:00"),
        )
    db.commit()
    return conversation_id


def insert_pipeline_run(db, workspace_id: str = "ws1", config_id: str = "cfg1", state: str = "running",
                        params: dict | None = None, metrics: dict | None = None,
                        heartbeat_at: str | None = None, retry_count: int = 0) -> int:
    cur = db.execute(
        """INSERT INTO pipeline_runs
           (workspace_id, config_id, channel, mode, state, params, metrics,
            retry_count, started_at, last_heartbeat_at)
           VALUES (?, ?, 'email', 'onboarding', ?, ?, ?, ?, ?, ?)""",
        (workspace_id, config_id, state, json.dumps(params or {"cap": 100}),
         json.dumps(metrics or {}), retry_count, utcnow(), heartbeat_at or utcnow()),
    )
    db.commit()
    return cur.lastrowid
