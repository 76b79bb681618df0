"""Pydantic models shared across store, pipeline, API and progress tracking."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


class TaskKind(str, Enum):
    """What the user submitted: a search intent or a single site."""

    QUERY_SEARCH = "query-search"
    DIRECT_URL = "direct-url"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# Stage labels in execution order; progress.total is the length of the list.
QUERY_SEARCH_STAGES: tuple[str, ...] = (
    "query-generation",
    "searching",
    "aggregation",
    "scraping",
    "filtering",
    "deduplication",
    "relevance",
    "saving",
)
DIRECT_URL_STAGES: tuple[str, ...] = (
    "scraping",
    "filtering",
    "deduplication",
    "saving",
)


def stages_for(kind: TaskKind) -> tuple[str, ...]:
    if kind is TaskKind.QUERY_SEARCH:
        return QUERY_SEARCH_STAGES
    return DIRECT_URL_STAGES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an address; blank input yields ``None``."""

    if value is None:
        return None
    cleaned = value.strip().lower()
    return cleaned or None


def is_http_url(value: str | None) -> bool:
    if not value:
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class TaskProgress(BaseModel):
    current: int = 0
    total: int = 0
    message: str = ""


class Candidate(BaseModel):
    """One organisation discovered by a scrape; never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    name: str
    email: str | None = None
    all_emails: tuple[str, ...] = ()
    source_url: str
    description: str = ""
    discovered_at: datetime = Field(default_factory=utcnow)

    def harvested_emails(self) -> list[str]:
        """Addresses found by pattern extraction over the description."""
        if not self.description:
            return []
        return EMAIL_PATTERN.findall(self.description)

    @property
    def contact_email(self) -> str | None:
        """Primary address: explicit email, then discovered set, then description."""
        for value in (self.email, *self.all_emails, *self.harvested_emails()):
            if value and value.strip():
                return value.strip()
        return None

    @property
    def has_email(self) -> bool:
        return self.contact_email is not None


class Task(BaseModel):
    """Canonical task record returned by the store and the API."""

    task_id: str
    owner: str
    kind: TaskKind
    name: str = ""
    query: str | None = None
    url: str | None = None
    result_count: int | None = None
    status: TaskStatus = TaskStatus.PENDING
    stage: str = "queued"
    progress: TaskProgress = Field(default_factory=TaskProgress)
    retry_count: int = 0
    result: list[Candidate] | None = None
    summary: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class PersistedContact(BaseModel):
    """A candidate that survived deduplication, keyed by (owner, email)."""

    owner: str
    email: str
    name: str
    all_emails: list[str] = Field(default_factory=list)
    source_url: str
    description: str = ""
    task_id: str | None = None
    created_at: datetime


class PersistResult(BaseModel):
    inserted: int = 0
    already_existing: int = 0


__all__ = [
    "Candidate",
    "DIRECT_URL_STAGES",
    "EMAIL_PATTERN",
    "PersistResult",
    "PersistedContact",
    "QUERY_SEARCH_STAGES",
    "TERMINAL_STATUSES",
    "Task",
    "TaskKind",
    "TaskProgress",
    "TaskStatus",
    "is_http_url",
    "normalize_email",
    "stages_for",
    "utcnow",
]
