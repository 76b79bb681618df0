"""User interaction helpers."""

from .progress import (
    ProgressSnapshot,
    ProgressWatcher,
    TaskProgressMirror,
    TaskProgressReporter,
)

__all__ = [
    "ProgressSnapshot",
    "ProgressWatcher",
    "TaskProgressMirror",
    "TaskProgressReporter",
]
