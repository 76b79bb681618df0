"""Exception hierarchy shared by the store, pipeline and collaborators."""

from __future__ import annotations


class LeadCrawlerError(Exception):
    """Base class for all application errors."""


class TaskNotFoundError(LeadCrawlerError, KeyError):
    """Raised when a task id does not exist in the store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} does not exist")
        self.task_id = task_id

    def __str__(self) -> str:
        return self.args[0]


class TaskStateError(LeadCrawlerError):
    """Raised when a transition is not allowed from the task's current status."""

    def __init__(self, task_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message or f"Task {task_id} cannot leave status {status}")
        self.task_id = task_id
        self.status = status


class TaskCancelledError(TaskStateError):
    """Raised when a write targets a task that is no longer running."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(task_id, status, f"Task {task_id} is {status}, not running")


class InvalidTaskError(LeadCrawlerError, ValueError):
    """Raised when task input does not match its kind."""


class CollaboratorError(LeadCrawlerError):
    """Failure reported by an external service.

    ``transient`` marks network/timeout style failures that may succeed on a
    later attempt; terminal failures (rejected input) set it to False.
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class QueryGenerationError(CollaboratorError):
    """The AI query-generation service failed or returned nothing usable."""


class SearchError(CollaboratorError):
    """The geo-search provider failed for every accepted query."""


class ScrapeError(CollaboratorError):
    """A scrape sub-job failed."""


__all__ = [
    "CollaboratorError",
    "InvalidTaskError",
    "LeadCrawlerError",
    "QueryGenerationError",
    "ScrapeError",
    "SearchError",
    "TaskCancelledError",
    "TaskNotFoundError",
    "TaskStateError",
]
