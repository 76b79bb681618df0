from __future__ import annotations

import json

import httpx
import pytest

from lead_crawler.config import ServicesConfig
from lead_crawler.errors import QueryGenerationError
from lead_crawler.services import OpenAIQueryGenerator

REPLY = [
    {"queries": ["dentist dubai", "dental clinic dubai"], "language": "en", "region": "AE"},
    {"queries": ["طبيب اسنان دبي"], "language": "ar"},
]


def _config(**overrides) -> ServicesConfig:
    base = {"openai_api_key": "sk-test", "openai_assistant_id": "asst_1", "openai_base_url": "https://ai.test/v1"}
    base.update(overrides)
    return ServicesConfig(**base)


def _generator(handler, config: ServicesConfig | None = None, sleeps: list | None = None) -> OpenAIQueryGenerator:
    config = config or _config()
    client = httpx.Client(base_url=config.openai_base_url, transport=httpx.MockTransport(handler))
    sink = sleeps if sleeps is not None else []
    return OpenAIQueryGenerator(config, client=client, sleep=sink.append)


def _assistant_handler(run_states: list[str], reply: str, seen: list[tuple[str, str]]):
    states = iter(run_states)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["OpenAI-Beta"] == "assistants=v2"
        path = request.url.path
        if request.method == "POST" and path == "/v1/threads":
            return httpx.Response(200, json={"id": "thread_1"})
        if request.method == "POST" and path == "/v1/threads/thread_1/messages":
            assert json.loads(request.content)["content"] == "dental clinics in Dubai"
            return httpx.Response(200, json={"id": "msg_1"})
        if request.method == "POST" and path == "/v1/threads/thread_1/runs":
            assert json.loads(request.content) == {"assistant_id": "asst_1"}
            return httpx.Response(200, json={"id": "run_1", "status": "queued"})
        if path == "/v1/threads/thread_1/runs/run_1":
            state = next(states)
            return httpx.Response(200, json={"id": "run_1", "status": state, "last_error": None})
        if request.method == "GET" and path == "/v1/threads/thread_1/messages":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"role": "assistant", "content": [{"type": "text", "text": {"value": reply}}]},
                        {"role": "user", "content": [{"type": "text", "text": {"value": "ignored"}}]},
                    ]
                },
            )
        return httpx.Response(404, json={"error": {"message": f"unexpected {path}"}})

    return handler


def test_generate_runs_assistant_and_parses_groups() -> None:
    seen: list[tuple[str, str]] = []
    sleeps: list[float] = []
    generator = _generator(
        _assistant_handler(["in_progress", "completed"], json.dumps(REPLY), seen),
        sleeps=sleeps,
    )

    groups = generator.generate("dental clinics in Dubai")

    assert [group.queries for group in groups] == [["dentist dubai", "dental clinic dubai"], ["طبيب اسنان دبي"]]
    assert (groups[1].language, groups[1].region) == ("ar", "US")
    assert sleeps == [1.0]
    assert seen[0] == ("POST", "/v1/threads")


def test_failed_run_raises_transient_error() -> None:
    generator = _generator(_assistant_handler(["failed"], "[]", []))
    with pytest.raises(QueryGenerationError) as excinfo:
        generator.generate("dental clinics in Dubai")
    assert "Assistant run failed" in str(excinfo.value)
    assert excinfo.value.transient


def test_missing_credentials_fail_fast() -> None:
    calls: list[httpx.Request] = []
    generator = _generator(lambda request: calls.append(request), config=_config(openai_api_key=""))
    with pytest.raises(QueryGenerationError) as excinfo:
        generator.generate("anything")
    assert excinfo.value.transient is False
    assert calls == []


def test_http_errors_carry_upstream_message() -> None:
    generator = _generator(
        lambda request: httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})
    )
    with pytest.raises(QueryGenerationError) as excinfo:
        generator.generate("anything")
    assert "Incorrect API key provided" in str(excinfo.value)
    assert excinfo.value.transient is False

    limited = _generator(lambda request: httpx.Response(429, text="slow down"))
    with pytest.raises(QueryGenerationError) as excinfo:
        limited.generate("anything")
    assert excinfo.value.transient is True


def test_parse_reply_accepts_single_object_and_skips_empty_groups() -> None:
    single = OpenAIQueryGenerator.parse_reply('{"queries": [" gym oslo ", ""], "region": "NO"}')
    assert [(group.queries, group.language, group.region) for group in single] == [(["gym oslo"], "en", "NO")]

    mixed = OpenAIQueryGenerator.parse_reply('[{"queries": []}, "noise", {"queries": ["spa oslo"]}]')
    assert [group.queries for group in mixed] == [["spa oslo"]]

    with pytest.raises(QueryGenerationError):
        OpenAIQueryGenerator.parse_reply("Sure! Here are your queries")
    with pytest.raises(QueryGenerationError):
        OpenAIQueryGenerator.parse_reply("42")
