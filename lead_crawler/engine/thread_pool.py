"""Named thread pools so pipelines, searches and scrape sub-jobs never starve each other."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Dict


class ThreadPoolManager:
    """Hand out one shared default executor plus isolated executors by name."""

    def __init__(self, default_workers: int = 8) -> None:
        self.default_workers = default_workers
        self._default_executor = ThreadPoolExecutor(max_workers=default_workers, thread_name_prefix="lead")
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._lock = Lock()

    def get(self, name: str | None = None, max_workers: int | None = None) -> ThreadPoolExecutor:
        """Return the executor called ``name``; ``max_workers`` only applies on first use."""

        if name is None:
            return self._default_executor
        with self._lock:
            if name not in self._executors:
                workers = max_workers or self.default_workers
                self._executors[name] = ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix=f"lead-{name}"
                )
            return self._executors[name]

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._executors)

    def shutdown(self, wait: bool = False) -> None:
        self._default_executor.shutdown(wait=wait)
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait)
            self._executors.clear()


__all__ = ["ThreadPoolManager"]
