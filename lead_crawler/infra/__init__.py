"""Infra layer utilities (task storage, event bus)."""

from .events import Subscription, TaskEvent, TaskEventBus
from .storage import SQLiteManager, TaskStore

__all__ = ["SQLiteManager", "Subscription", "TaskEvent", "TaskEventBus", "TaskStore"]
