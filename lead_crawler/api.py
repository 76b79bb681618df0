"""FastAPI application exposing the task lifecycle and its progress stream."""

from __future__ import annotations

import json
from typing import Any, Iterator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .errors import InvalidTaskError, TaskNotFoundError, TaskStateError
from .infra import Subscription, TaskEvent, TaskStore
from .logging_conf import configure_logging
from .models import Candidate, Task, TaskKind
from .scheduler import TaskWorker

SSE_HEARTBEAT_SECONDS = 15.0


class CreateTaskRequest(BaseModel):
    kind: TaskKind
    query: str | None = None
    url: str | None = None
    name: str | None = None
    result_count: int | None = None


class ProgressUpdateRequest(BaseModel):
    stage: str
    current: int = Field(ge=0)
    total: int = Field(ge=0)
    message: str = ""


class CompleteTaskRequest(BaseModel):
    results: list[Candidate] = Field(default_factory=list)
    summary: dict[str, Any] | None = None


class FailTaskRequest(BaseModel):
    error: str = Field(min_length=1)


def require_owner(x_user_id: str | None = Header(default=None)) -> str:
    """Owner identity comes from the ``X-User-Id`` header."""

    owner = (x_user_id or "").strip()
    if not owner:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return owner


def format_sse(event: TaskEvent, name: str = "task") -> str:
    return f"event: {name}\ndata: {json.dumps(event.to_payload())}\n\n"


def stream_events(
    subscription: Subscription,
    initial: list[TaskEvent],
    heartbeat: float = SSE_HEARTBEAT_SECONDS,
    max_events: int | None = None,
) -> Iterator[str]:
    """Yield SSE frames: current state first, then live changes, with keep-alive comments."""

    sent = 0
    try:
        for event in initial:
            yield format_sse(event, name="snapshot")
            sent += 1
            if max_events is not None and sent >= max_events:
                return
        while not subscription.closed:
            event = subscription.get(timeout=heartbeat)
            if event is None:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(event)
            sent += 1
            if max_events is not None and sent >= max_events:
                return
    finally:
        subscription.close()


def create_app(
    store: TaskStore,
    worker: TaskWorker | None = None,
    sse_heartbeat: float = SSE_HEARTBEAT_SECONDS,
) -> FastAPI:
    """Application factory; the store and worker are shared through ``app.state``."""

    app = FastAPI(title="lead_crawler", version=__version__)
    app.state.store = store
    app.state.worker = worker
    logger = configure_logging().bind(component="api")

    @app.exception_handler(RequestValidationError)
    def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    def _owned_task(task_id: str, owner: str) -> Task:
        task = app.state.store.get_for_owner(task_id, owner)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/worker/status")
    def worker_status() -> dict[str, Any]:
        if app.state.worker is None:
            return {"running": False, "active_tasks": [], "active_count": 0}
        return app.state.worker.status()

    @app.post("/tasks", response_model=Task, status_code=201)
    def create_task(payload: CreateTaskRequest, owner: str = Depends(require_owner)) -> Task:
        try:
            task = app.state.store.create(
                payload.kind,
                owner,
                query=payload.query,
                url=payload.url,
                name=payload.name,
                result_count=payload.result_count,
            )
        except InvalidTaskError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("task_created", task_id=task.task_id, kind=task.kind.value, owner=owner)
        return task

    @app.get("/tasks", response_model=list[Task])
    def list_tasks(
        owner: str = Depends(require_owner),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[Task]:
        return app.state.store.list_for_owner(owner, limit=limit)

    @app.get("/tasks/active", response_model=list[Task])
    def list_active(owner: str = Depends(require_owner)) -> list[Task]:
        return app.state.store.list_active(owner)

    @app.get("/tasks/stats")
    def task_stats(owner: str = Depends(require_owner)) -> dict[str, int]:
        return app.state.store.stats(owner)

    @app.get("/tasks/events")
    def task_events(
        owner: str = Depends(require_owner),
        max_events: int | None = Query(default=None, ge=1),
    ) -> StreamingResponse:
        subscription = app.state.store.events.subscribe(owner=owner)
        initial = [TaskEvent.from_task(task) for task in app.state.store.list_active(owner)]
        return StreamingResponse(
            stream_events(subscription, initial, heartbeat=sse_heartbeat, max_events=max_events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.get("/tasks/{task_id}", response_model=Task)
    def get_task(task_id: str, owner: str = Depends(require_owner)) -> Task:
        return _owned_task(task_id, owner)

    @app.patch("/tasks/{task_id}/running", response_model=Task)
    def mark_running(task_id: str, owner: str = Depends(require_owner)) -> Task:
        _owned_task(task_id, owner)
        if not app.state.store.claim(task_id):
            raise HTTPException(status_code=409, detail="Task is not pending")
        return _owned_task(task_id, owner)

    @app.patch("/tasks/{task_id}/progress", response_model=Task)
    def update_progress(
        task_id: str,
        payload: ProgressUpdateRequest,
        owner: str = Depends(require_owner),
    ) -> Task:
        _owned_task(task_id, owner)
        try:
            return app.state.store.update_progress(
                task_id, payload.stage, payload.current, payload.total, payload.message
            )
        except TaskStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.patch("/tasks/{task_id}/completed", response_model=Task)
    def mark_completed(
        task_id: str,
        payload: CompleteTaskRequest,
        owner: str = Depends(require_owner),
    ) -> Task:
        _owned_task(task_id, owner)
        try:
            return app.state.store.complete(task_id, payload.results, payload.summary)
        except TaskStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.patch("/tasks/{task_id}/failed", response_model=Task)
    def mark_failed(task_id: str, payload: FailTaskRequest, owner: str = Depends(require_owner)) -> Task:
        task = _owned_task(task_id, owner)
        if task.is_terminal:
            raise HTTPException(status_code=409, detail=f"Task is already {task.status.value}")
        return app.state.store.fail(task_id, payload.error)

    @app.post("/tasks/{task_id}/cancel", response_model=Task)
    def cancel_task(task_id: str, owner: str = Depends(require_owner)) -> Task:
        _owned_task(task_id, owner)
        try:
            task = app.state.store.cancel(task_id)
        except TaskNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Task not found") from exc
        except TaskStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        logger.info("task_cancelled", task_id=task_id, owner=owner)
        return task

    return app


__all__ = [
    "CompleteTaskRequest",
    "CreateTaskRequest",
    "FailTaskRequest",
    "ProgressUpdateRequest",
    "create_app",
    "format_sse",
    "require_owner",
    "stream_events",
]
