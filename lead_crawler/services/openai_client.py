"""Search query generation through an OpenAI assistant (Assistants API v2)."""

from __future__ import annotations

import json
import time
from typing import Any, Callable

import httpx
import structlog

from ..config import ServicesConfig
from ..errors import QueryGenerationError
from .base import QueryGroup, error_message

_TERMINAL_RUN_STATES = {"failed", "cancelled", "expired", "incomplete"}


class OpenAIQueryGenerator:
    """Turn a free-text intent into grouped search queries.

    Each call creates a thread, posts the intent, runs the configured
    assistant and polls the run until it finishes. The assistant is expected to
    answer with JSON, either a list of ``{queries, language, region}`` groups
    or the older single object with the same keys.
    """

    def __init__(
        self,
        config: ServicesConfig,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.assistant_id = config.openai_assistant_id
        self._client = client or httpx.Client(base_url=config.openai_base_url, timeout=config.request_timeout)
        self._sleep = sleep
        self.logger = structlog.get_logger("lead_crawler.services.openai")

    def close(self) -> None:
        self._client.close()

    def generate(self, intent: str) -> list[QueryGroup]:
        if not self.config.openai_api_key or not self.assistant_id:
            raise QueryGenerationError("OpenAI credentials are not configured", transient=False)
        thread = self._call("POST", "/threads", json={})
        thread_id = thread["id"]
        self._call("POST", f"/threads/{thread_id}/messages", json={"role": "user", "content": intent})
        run = self._call("POST", f"/threads/{thread_id}/runs", json={"assistant_id": self.assistant_id})
        self._wait_for_run(thread_id, run["id"])
        messages = self._call("GET", f"/threads/{thread_id}/messages")
        text = self._assistant_text(messages)
        groups = self.parse_reply(text, self.config.default_language, self.config.default_region)
        self.logger.info(
            "queries_generated",
            groups=len(groups),
            queries=sum(len(group.queries) for group in groups),
        )
        return groups

    # ------------------------------------------------------------------
    @staticmethod
    def parse_reply(text: str, default_language: str = "en", default_region: str = "US") -> list[QueryGroup]:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise QueryGenerationError(f"Assistant reply is not JSON: {exc}", transient=False) from exc
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list):
            raise QueryGenerationError("Assistant reply has an unexpected shape", transient=False)
        groups: list[QueryGroup] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            queries = [str(query).strip() for query in item.get("queries") or [] if str(query).strip()]
            if not queries:
                continue
            groups.append(
                QueryGroup(
                    queries=queries,
                    language=str(item.get("language") or default_language),
                    region=str(item.get("region") or default_region),
                )
            )
        return groups

    def _wait_for_run(self, thread_id: str, run_id: str) -> None:
        deadline = time.monotonic() + self.config.openai_max_wait_seconds
        while True:
            run = self._call("GET", f"/threads/{thread_id}/runs/{run_id}")
            status = run.get("status")
            if status == "completed":
                return
            if status in _TERMINAL_RUN_STATES:
                reason = (run.get("last_error") or {}).get("message") or "unknown error"
                raise QueryGenerationError(f"Assistant run {status}: {reason}")
            if time.monotonic() >= deadline:
                raise QueryGenerationError("Assistant run did not finish in time")
            self._sleep(self.config.openai_poll_interval_seconds)

    @staticmethod
    def _assistant_text(messages: dict[str, Any]) -> str:
        for message in messages.get("data") or []:
            if message.get("role") != "assistant":
                continue
            for part in message.get("content") or []:
                value = (part.get("text") or {}).get("value")
                if value:
                    return value
        raise QueryGenerationError("No response received from assistant")

    def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "assistants=v2",
        }
        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise QueryGenerationError(f"OpenAI request failed: {exc}") from exc
        if response.is_error:
            raise QueryGenerationError(
                f"OpenAI {method} {path} returned {response.status_code}: {error_message(response)}",
                transient=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json()


__all__ = ["OpenAIQueryGenerator"]
