"""Invoker: runs handlers by name, in the foreground or on a thread pool.

``dispatch`` is fire-and-forget: the handler runs later on a worker thread
with its own database connection, and any exception is logged, never
raised to the caller. ``invoke`` runs a handler synchronously and is what
the HTTP layer calls.

Delayed dispatches ride on daemon timers and are not waited for by
``shutdown``; a job whose delayed re-entry is lost is picked up by the
watchdogs.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Callable

from inboxpilot.config import Config, load_config
from inboxpilot.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Oldest events are dropped once a listener falls this far behind
EVENT_QUEUE_SIZE = 1000

# SSE event bus: worker threads post updates, the SSE endpoint reads them
_event_listeners: list[deque] = []
_event_lock = threading.Lock()


def publish_event(event: dict) -> None:
    """Publish a handler event to all SSE listeners."""
    with _event_lock:
        for q in _event_listeners:
            q.append(event)


def subscribe_events(maxlen: int = EVENT_QUEUE_SIZE) -> deque:
    """Return a new bounded event queue that receives handler events."""
    q: deque = deque(maxlen=maxlen)
    with _event_lock:
        _event_listeners.append(q)
    return q


def unsubscribe_events(q: deque) -> None:
    with _event_lock:
        if q in _event_listeners:
            _event_listeners.remove(q)


class Invoker:
    """Named handler execution over a bounded ThreadPoolExecutor."""

    def __init__(
        self,
        config: Config | None = None,
        handlers: dict[str, Callable] | None = None,
        conn_factory: Callable[[], sqlite3.Connection] | None = None,
        **context_options,
    ):
        self._config = config
        self._handlers = handlers
        self._conn_factory = conn_factory
        self._context_options = context_options
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = load_config()
        return self._config

    @property
    def handlers(self) -> dict[str, Callable]:
        if self._handlers is None:
            from inboxpilot.handlers import HANDLERS
            self._handlers = HANDLERS
        return self._handlers

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.pipeline.worker_threads,
                    thread_name_prefix="inboxpilot-worker",
                )
            return self._executor

    def _connect(self) -> tuple[sqlite3.Connection, bool]:
        """Return (connection, owned). Owned connections are closed after the call."""
        if self._conn_factory is not None:
            return self._conn_factory(), False
        from inboxpilot.database import get_db, init_db
        conn = get_db(self.config)
        init_db(conn)
        return conn, True

    def invoke(self, name: str, payload: dict, raise_errors: bool = True) -> dict:
        """Run handler ``name`` now and return its result.

        With ``raise_errors=False`` an exception is logged and turned into
        ``{"success": False, "error": ...}``.
        """
        from inboxpilot.handlers.base import HandlerContext

        handler = self.handlers.get(name)
        if handler is None:
            raise ConfigurationError(f"Unknown handler: {name}")

        conn, owned = self._connect()
        log_extra = {"handler": name, "job_id": payload.get("job_id"),
                     "workspace_id": payload.get("workspace_id")}
        publish_event({"type": "handler_started", "handler": name, "job_id": payload.get("job_id")})
        try:
            ctx = HandlerContext(conn=conn, config=self.config, invoker=self, **self._context_options)
            result = handler(ctx, payload)
        except Exception as e:
            publish_event({"type": "handler_failed", "handler": name,
                           "job_id": payload.get("job_id"), "error": str(e)})
            if raise_errors:
                raise
            logger.exception("handler %s failed", name, extra=log_extra)
            return {"success": False, "error": str(e)}
        finally:
            if owned:
                conn.close()

        publish_event({"type": "handler_finished", "handler": name,
                       "job_id": payload.get("job_id"), "success": result.get("success")})
        return result

    def _run_background(self, name: str, payload: dict) -> None:
        self.invoke(name, payload, raise_errors=False)

    def dispatch(self, name: str, payload: dict, delay_seconds: float = 0) -> None:
        """Queue handler ``name`` to run in the background, optionally after a delay."""
        if name not in self.handlers:
            raise ConfigurationError(f"Unknown handler: {name}")
        logger.debug("dispatch %s in %ss", name, delay_seconds, extra={"handler": name})
        if delay_seconds and delay_seconds > 0:
            timer = threading.Timer(delay_seconds, self._submit, args=(name, payload))
            timer.daemon = True
            timer.start()
        else:
            self._submit(name, payload)

    def _submit(self, name: str, payload: dict) -> None:
        future = self._get_executor().submit(self._run_background, name, payload)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until no immediate dispatch is queued or running.

        Handlers that chain onward submit their successor before they finish,
        so looping until the pending set is empty also waits for whole chains.
        Returns False if ``timeout`` expired first.
        """
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return True
            _, not_done = wait_futures(pending, timeout=timeout)
            if not_done:
                return False

    def shutdown(self, wait: bool = True) -> None:
        if wait:
            self.drain()
        with self._lock:
            executor, self._executor = self._executor, None
        # outside the lock: running workers may still call _get_executor
        if executor is not None:
            executor.shutdown(wait=wait)


# Global singleton
invoker = Invoker()
