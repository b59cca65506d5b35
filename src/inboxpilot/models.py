"""Status enums, phase ordering and typed job payloads."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum


class ImportJobStatus(str, Enum):
    QUEUED = "queued"
    SCANNING_INBOX = "scanning_inbox"
    SCANNING_SENT = "scanning_sent"
    ANALYZING = "analyzing"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    LEARNING = "learning"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class ResearchJobStatus(str, Enum):
    QUEUED = "queued"
    DISCOVERING = "discovering"
    SCRAPING = "scraping"
    EXTRACTING = "extracting"
    DEDUPLICATING = "deduplicating"
    REFINING = "refining"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class RunState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    SCANNED = "scanned"
    QUEUED_FOR_FETCH = "queued_for_fetch"
    FETCHED = "fetched"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERROR = "error"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DecisionBucket(str, Enum):
    ACT_NOW = "act_now"
    QUICK_WIN = "quick_win"
    WAIT = "wait"
    AUTO_HANDLED = "auto_handled"


class TriageSource(str, Enum):
    RULE = "rule"
    LLM = "llm"
    FALLBACK = "fallback"
    CORRECTION = "correction"


# Order of the non-terminal phases; terminal states rank above every phase.
IMPORT_PHASES = [
    ImportJobStatus.QUEUED,
    ImportJobStatus.SCANNING_INBOX,
    ImportJobStatus.SCANNING_SENT,
    ImportJobStatus.ANALYZING,
    ImportJobStatus.FETCHING,
    ImportJobStatus.CLASSIFYING,
    ImportJobStatus.LEARNING,
    ImportJobStatus.COMPLETED,
]

RESEARCH_PHASES = [
    ResearchJobStatus.QUEUED,
    ResearchJobStatus.DISCOVERING,
    ResearchJobStatus.SCRAPING,
    ResearchJobStatus.EXTRACTING,
    ResearchJobStatus.DEDUPLICATING,
    ResearchJobStatus.REFINING,
    ResearchJobStatus.COMPLETED,
]

TERMINAL_STATUSES = frozenset({"completed", "error", "cancelled", "failed"})


@dataclass
class ImportFetchJob:
    """One page of the queue-based importer. Carries its own cursor."""

    workspace_id: str
    run_id: int
    config_id: str
    folder: str = "SENT"
    page_token: str | None = None
    cap: int = 2500
    fetched_so_far: int = 0
    pages: int = 0
    rate_limit_count: int = 0
    job_type: str = field(default="IMPORT_FETCH", init=False)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PhaseJob:
    """Generic phase dispatch for the import and research pipelines."""

    handler: str
    workspace_id: str
    job_id: str | None = None
    config_id: str | None = None
    resume: bool = False
    params: dict = field(default_factory=dict)
    job_type: str = field(default="PHASE", init=False)

    def to_dict(self) -> dict:
        return asdict(self)


JOB_TYPES = {
    "IMPORT_FETCH": ImportFetchJob,
    "PHASE": PhaseJob,
}


def job_from_dict(data: dict | str) -> ImportFetchJob | PhaseJob:
    """Rebuild a typed job from its JSON form.

    Raises ValueError for an unknown ``job_type`` or missing fields.
    """
    if isinstance(data, str):
        data = json.loads(data)
    data = dict(data)
    job_type = data.pop("job_type", None)
    cls = JOB_TYPES.get(job_type)
    if cls is None:
        raise ValueError(f"Unsupported job type: {job_type!r}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ValueError(f"Invalid {job_type} payload: {e}") from e
