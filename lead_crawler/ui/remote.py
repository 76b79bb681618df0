"""HTTP access to a running Lead Crawler API: task polling and the SSE push channel."""

from __future__ import annotations

import json
import queue
from threading import Event, Thread
from typing import Any

import httpx
import structlog

from ..errors import TaskNotFoundError


class ApiTaskClient:
    """Thin httpx wrapper that speaks as one owner."""

    def __init__(self, base_url: str, owner: str, client: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self.owner = owner
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._client.headers["X-User-Id"] = owner

    def close(self) -> None:
        self._client.close()

    def get_task(self, task_id: str) -> dict[str, Any]:
        response = self._client.get(f"/tasks/{task_id}")
        if response.status_code == 404:
            raise TaskNotFoundError(task_id)
        response.raise_for_status()
        return response.json()

    def subscribe(self, task_id: str | None = None) -> "SSEChannel":
        return SSEChannel(self._client)


class SSEChannel:
    """Read ``GET /tasks/events`` on a background thread and queue each payload."""

    def __init__(self, client: httpx.Client, path: str = "/tasks/events") -> None:
        self._client = client
        self._path = path
        self._queue: queue.Queue = queue.Queue()
        self._finished = Event()
        self._stopping = Event()
        self._response: httpx.Response | None = None
        self.logger = structlog.get_logger("lead_crawler.ui.sse")
        self._thread = Thread(target=self._read, name="lead-sse", daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._finished.is_set() and self._queue.empty()

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._stopping.set()
        if self._response is not None:
            self._response.close()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _read(self) -> None:
        try:
            with self._client.stream("GET", self._path, timeout=None) as response:
                self._response = response
                response.raise_for_status()
                data_lines: list[str] = []
                for line in response.iter_lines():
                    if self._stopping.is_set():
                        break
                    if line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                    elif not line and data_lines:
                        self._queue.put(json.loads("\n".join(data_lines)))
                        data_lines = []
                if data_lines:
                    self._queue.put(json.loads("\n".join(data_lines)))
        except (httpx.HTTPError, httpx.StreamError, json.JSONDecodeError) as exc:
            if not self._stopping.is_set():
                self.logger.warning("sse_stream_failed", error=str(exc))
        finally:
            self._finished.set()


__all__ = ["ApiTaskClient", "SSEChannel"]
