"""Background scheduling: APScheduler adapter and the polling task worker."""

from .apsched_adapter import APSchedulerAdapter
from .worker import TaskWorker

__all__ = ["APSchedulerAdapter", "TaskWorker"]
