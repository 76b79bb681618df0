"""SQLite-backed task store and persisted contacts."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Callable, Dict, Iterable, Sequence
from urllib.parse import urlparse

from ..errors import InvalidTaskError, TaskCancelledError, TaskNotFoundError, TaskStateError
from ..models import (
    Candidate,
    PersistedContact,
    PersistResult,
    Task,
    TaskKind,
    TaskProgress,
    TaskStatus,
    is_http_url,
    normalize_email,
    stages_for,
    utcnow,
)
from .events import TaskEventBus

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"
_ACTIVE = (TaskStatus.PENDING.value, TaskStatus.RUNNING.value)


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                kind TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                query TEXT,
                url TEXT,
                result_count INTEGER,
                status TEXT NOT NULL,
                stage TEXT NOT NULL,
                progress_current INTEGER NOT NULL DEFAULT 0,
                progress_total INTEGER NOT NULL DEFAULT 0,
                progress_message TEXT NOT NULL DEFAULT '',
                retry_count INTEGER NOT NULL DEFAULT 0,
                result TEXT,
                summary TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_tasks_status_updated ON tasks (status, updated_at);
            CREATE INDEX IF NOT EXISTS idx_tasks_owner_created ON tasks (owner, created_at);
            CREATE TABLE IF NOT EXISTS contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner TEXT NOT NULL,
                email TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                all_emails TEXT NOT NULL DEFAULT '[]',
                source_url TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                task_id TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (owner, email)
            );
            """
        )
        conn.commit()

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


class TaskStore:
    """Durable task records with guarded status transitions.

    Status changes are conditional ``UPDATE`` statements so that concurrent
    writers (scheduler, user cancel, stuck recovery) never clobber each other:
    a transition applies only when the row is still in the expected status.
    Every successful write publishes the new row on ``events``.
    """

    def __init__(
        self,
        manager: SQLiteManager,
        path: Path,
        events: TaskEventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.manager = manager
        self.path = path
        self.events = events or TaskEventBus()
        self.clock = clock
        self._lock = RLock()
        self._conn = manager.connect(path)

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------
    def create(
        self,
        kind: TaskKind | str,
        owner: str,
        *,
        query: str | None = None,
        url: str | None = None,
        name: str | None = None,
        result_count: int | None = None,
    ) -> Task:
        kind = TaskKind(kind)
        owner = (owner or "").strip()
        if not owner:
            raise InvalidTaskError("owner is required")
        query = query.strip() if query else None
        url = url.strip() if url else None
        if kind is TaskKind.QUERY_SEARCH:
            if not query or url:
                raise InvalidTaskError("query-search tasks need a non-empty query and no url")
            default_name = query
        else:
            if query or not is_http_url(url):
                raise InvalidTaskError("direct-url tasks need an http(s) url and no query")
            default_name = urlparse(url).netloc
        if result_count is not None:
            if kind is not TaskKind.QUERY_SEARCH:
                raise InvalidTaskError("result_count only applies to query-search tasks")
            if result_count <= 0:
                raise InvalidTaskError("result_count must be positive")
        task_id = str(uuid.uuid4())
        now = _ts(self.clock())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO tasks (
                    id, owner, kind, name, query, url, result_count, status, stage,
                    progress_current, progress_total, progress_message,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'queued', 0, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    owner,
                    kind.value,
                    (name or default_name).strip(),
                    query,
                    url,
                    result_count,
                    TaskStatus.PENDING.value,
                    len(stages_for(kind)),
                    "Task created, waiting for a worker",
                    now,
                    now,
                ),
            )
            self._conn.commit()
        return self._publish(task_id)

    def get(self, task_id: str) -> Task | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def get_for_owner(self, task_id: str, owner: str) -> Task | None:
        task = self.get(task_id)
        if task is None or task.owner != owner:
            return None
        return task

    def list_for_owner(self, owner: str, limit: int = 50) -> list[Task]:
        return self._select(
            "SELECT * FROM tasks WHERE owner = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (owner, limit),
        )

    def list_active(self, owner: str) -> list[Task]:
        return self._select(
            "SELECT * FROM tasks WHERE owner = ? AND status IN (?, ?) ORDER BY created_at ASC, rowid ASC",
            (owner, *_ACTIVE),
        )

    def list_pending(self, limit: int) -> list[Task]:
        if limit <= 0:
            return []
        return self._select(
            "SELECT * FROM tasks WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (TaskStatus.PENDING.value, limit),
        )

    def list_stuck(self, older_than_minutes: float, limit: int) -> list[Task]:
        threshold = _ts(self.clock() - timedelta(minutes=older_than_minutes))
        return self._select(
            "SELECT * FROM tasks WHERE status = ? AND updated_at < ? ORDER BY updated_at ASC, rowid ASC LIMIT ?",
            (TaskStatus.RUNNING.value, threshold, limit),
        )

    def stats(self, owner: str | None = None) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        sql = "SELECT status, COUNT(*) AS total FROM tasks"
        params: tuple = ()
        if owner is not None:
            sql += " WHERE owner = ?"
            params = (owner,)
        sql += " GROUP BY status"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        for row in rows:
            counts[row["status"]] = row["total"]
        counts["total"] = sum(counts[status.value] for status in TaskStatus)
        return counts

    def claim(self, task_id: str) -> bool:
        """Move a pending task to running; only one concurrent caller wins."""

        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tasks
                SET status = ?, stage = 'starting', progress_message = ?, error = NULL, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    TaskStatus.RUNNING.value,
                    "Worker picked up the task",
                    _ts(self.clock()),
                    task_id,
                    TaskStatus.PENDING.value,
                ),
            )
            self._conn.commit()
            won = cursor.rowcount == 1
        if won:
            self._publish(task_id)
        return won

    def update_progress(
        self,
        task_id: str,
        stage: str,
        current: int,
        total: int,
        message: str = "",
    ) -> Task:
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tasks
                SET stage = ?, progress_current = ?, progress_total = ?, progress_message = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (stage, current, total, message, _ts(self.clock()), task_id, TaskStatus.RUNNING.value),
            )
            self._conn.commit()
            self._require_applied(cursor, task_id)
        return self._publish(task_id)

    def complete(
        self,
        task_id: str,
        results: Sequence[Candidate],
        summary: dict | None = None,
    ) -> Task:
        count = len(results)
        message = f"Found {count} new contacts" if count else "No new contacts found"
        payload = json.dumps([candidate.model_dump(mode="json") for candidate in results])
        now = _ts(self.clock())
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tasks
                SET status = ?, stage = 'complete', progress_current = progress_total,
                    progress_message = ?, result = ?, summary = ?, error = NULL,
                    updated_at = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    TaskStatus.COMPLETED.value,
                    message,
                    payload,
                    json.dumps(summary) if summary is not None else None,
                    now,
                    now,
                    task_id,
                    TaskStatus.RUNNING.value,
                ),
            )
            self._conn.commit()
            self._require_applied(cursor, task_id)
        return self._publish(task_id)

    def fail(self, task_id: str, error: str) -> Task:
        """Mark a pending or running task failed; terminal tasks are left as they are."""

        now = _ts(self.clock())
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tasks
                SET status = ?, stage = 'failed', error = ?, progress_message = ?,
                    updated_at = ?, completed_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (TaskStatus.FAILED.value, error, f"Failed: {error}", now, now, task_id, *_ACTIVE),
            )
            self._conn.commit()
            changed = cursor.rowcount == 1
        if changed:
            return self._publish(task_id)
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def cancel(self, task_id: str) -> Task:
        now = _ts(self.clock())
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tasks
                SET status = ?, stage = 'cancelled', progress_message = ?,
                    updated_at = ?, completed_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (TaskStatus.CANCELLED.value, "Cancelled by user", now, now, task_id, *_ACTIVE),
            )
            self._conn.commit()
            if cursor.rowcount != 1:
                task = self.get(task_id)
                if task is None:
                    raise TaskNotFoundError(task_id)
                raise TaskStateError(task_id, task.status.value, f"Task {task_id} is already {task.status.value}")
        return self._publish(task_id)

    def reset_to_pending(self, task_id: str, reason: str | None = None) -> Task:
        """Return a running task to the queue and count the retry.

        Without ``reason`` the task is treated as stalled; the pipeline passes
        the transient failure it hit instead.
        """

        message = "Requeued after a transient failure" if reason else "Requeued after the worker stalled"
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE tasks
                SET status = ?, stage = 'retry', retry_count = retry_count + 1,
                    progress_current = 0,
                    progress_message = ?,
                    error = ? || '; retry ' || (retry_count + 1),
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    TaskStatus.PENDING.value,
                    message,
                    reason or "Stalled while running",
                    _ts(self.clock()),
                    task_id,
                    TaskStatus.RUNNING.value,
                ),
            )
            self._conn.commit()
            self._require_applied(cursor, task_id)
        return self._publish(task_id)

    # ------------------------------------------------------------------
    # Persisted contacts
    # ------------------------------------------------------------------
    def existing_emails(self, owner: str, emails: Iterable[str]) -> set[str]:
        normalized = sorted({email for email in map(normalize_email, emails) if email})
        if not normalized:
            return set()
        placeholders = ", ".join("?" for _ in normalized)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT email FROM contacts WHERE owner = ? AND email IN ({placeholders})",
                (owner, *normalized),
            ).fetchall()
        return {row["email"] for row in rows}

    def persist_contacts(
        self,
        owner: str,
        task_id: str | None,
        candidates: Sequence[Candidate],
    ) -> PersistResult:
        """Insert contacts keyed by (owner, normalized email); conflicts are counted, not raised."""

        result = PersistResult()
        now = _ts(self.clock())
        with self._lock:
            for candidate in candidates:
                email = normalize_email(candidate.contact_email)
                if email is None:
                    continue
                cursor = self._conn.execute(
                    """
                    INSERT OR IGNORE INTO contacts (
                        owner, email, name, all_emails, source_url, description, task_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        owner,
                        email,
                        candidate.name,
                        json.dumps(list(candidate.all_emails)),
                        candidate.source_url,
                        candidate.description,
                        task_id,
                        now,
                    ),
                )
                if cursor.rowcount == 1:
                    result.inserted += 1
                else:
                    result.already_existing += 1
            self._conn.commit()
        return result

    def list_contacts(self, owner: str, limit: int = 100) -> list[PersistedContact]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM contacts WHERE owner = ? ORDER BY id DESC LIMIT ?",
                (owner, limit),
            ).fetchall()
        return [
            PersistedContact(
                owner=row["owner"],
                email=row["email"],
                name=row["name"],
                all_emails=json.loads(row["all_emails"] or "[]"),
                source_url=row["source_url"],
                description=row["description"],
                task_id=row["task_id"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _select(self, sql: str, params: tuple) -> list[Task]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def _require_applied(self, cursor: sqlite3.Cursor, task_id: str) -> None:
        if cursor.rowcount == 1:
            return
        row = self._conn.execute("SELECT status FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFoundError(task_id)
        raise TaskCancelledError(task_id, row["status"])

    def _publish(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        self.events.publish_task(task)
        return task

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        result = json.loads(row["result"]) if row["result"] is not None else None
        return Task(
            task_id=row["id"],
            owner=row["owner"],
            kind=TaskKind(row["kind"]),
            name=row["name"],
            query=row["query"],
            url=row["url"],
            result_count=row["result_count"],
            status=TaskStatus(row["status"]),
            stage=row["stage"],
            progress=TaskProgress(
                current=row["progress_current"],
                total=row["progress_total"],
                message=row["progress_message"],
            ),
            retry_count=row["retry_count"],
            result=[Candidate.model_validate(item) for item in result] if result is not None else None,
            summary=json.loads(row["summary"]) if row["summary"] is not None else None,
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )


__all__ = ["SQLiteManager", "TaskStore"]
