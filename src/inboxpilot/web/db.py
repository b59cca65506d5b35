"""SQLAlchemy engine and session factory for the read endpoints."""

from __future__ import annotations

import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker


def _get_database_url() -> str:
    """Read DATABASE_URL from env, falling back to the pipeline's SQLite file."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    return f"sqlite:///{os.getenv('INBOXPILOT_DB', 'inboxpilot.db')}"


def _make_engine(url: str | None = None):
    url = url or _get_database_url()
    kwargs: dict = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()
    return engine


engine = _make_engine()
SessionLocal = sessionmaker(bind=engine)
