"""SQLAlchemy ORM models for the job, run and incident tables polled by dashboards."""

from __future__ import annotations

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class EmailImportJob(Base):
    __tablename__ = "email_import_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String)
    config_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    checkpoint: Mapped[str | None] = mapped_column(Text)
    inbox_emails_scanned: Mapped[int | None] = mapped_column(Integer, default=0)
    sent_emails_scanned: Mapped[int | None] = mapped_column(Integer, default=0)
    total_threads_found: Mapped[int | None] = mapped_column(Integer, default=0)
    conversation_threads: Mapped[int | None] = mapped_column(Integer, default=0)
    bodies_fetched: Mapped[int | None] = mapped_column(Integer, default=0)
    messages_created: Mapped[int | None] = mapped_column(Integer, default=0)
    conversations_classified: Mapped[int | None] = mapped_column(Integer, default=0)
    heartbeat_at: Mapped[str | None] = mapped_column(String)
    retry_count: Mapped[int | None] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[str | None] = mapped_column(String)
    completed_at: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[str | None] = mapped_column(String)
    updated_at: Mapped[str | None] = mapped_column(String)


class CompetitorResearchJob(Base):
    __tablename__ = "competitor_research_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    workspace_id: Mapped[str] = mapped_column(String)
    niche_query: Mapped[str] = mapped_column(String)
    service_area: Mapped[str | None] = mapped_column(String)
    target_count: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String)
    sites_discovered: Mapped[int | None] = mapped_column(Integer, default=0)
    sites_approved: Mapped[int | None] = mapped_column(Integer, default=0)
    sites_scraped: Mapped[int | None] = mapped_column(Integer, default=0)
    pages_scraped: Mapped[int | None] = mapped_column(Integer, default=0)
    faqs_extracted: Mapped[int | None] = mapped_column(Integer, default=0)
    faqs_after_dedup: Mapped[int | None] = mapped_column(Integer, default=0)
    faqs_refined: Mapped[int | None] = mapped_column(Integer, default=0)
    faqs_added: Mapped[int | None] = mapped_column(Integer, default=0)
    current_scraping_domain: Mapped[str | None] = mapped_column(String)
    heartbeat_at: Mapped[str | None] = mapped_column(String)
    retry_count: Mapped[int | None] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[str | None] = mapped_column(String)
    completed_at: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[str | None] = mapped_column(String)


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(String)
    config_id: Mapped[str | None] = mapped_column(String)
    channel: Mapped[str | None] = mapped_column(String)
    mode: Mapped[str | None] = mapped_column(String)
    state: Mapped[str] = mapped_column(String)
    params: Mapped[str | None] = mapped_column(Text)
    metrics: Mapped[str | None] = mapped_column(Text)
    last_error: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int | None] = mapped_column(Integer, default=0)
    started_at: Mapped[str | None] = mapped_column(String)
    last_heartbeat_at: Mapped[str | None] = mapped_column(String)
    completed_at: Mapped[str | None] = mapped_column(String)


class PipelineIncident(Base):
    __tablename__ = "pipeline_incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workspace_id: Mapped[str | None] = mapped_column(String)
    run_id: Mapped[int | None] = mapped_column(Integer)
    severity: Mapped[str | None] = mapped_column(String)
    scope: Mapped[str | None] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text)
    context: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[str | None] = mapped_column(String)
    resolved_at: Mapped[str | None] = mapped_column(String)
