"""structlog over stdlib JSON logging, with one log file per running task."""

from __future__ import annotations

import logging
import logging.config
from pathlib import Path
from threading import Lock
from typing import Iterable

import structlog

from .config.loader import ConfigLocator

LOGGER_NAME = "lead_crawler"

_setup_lock = Lock()
_configured = False
_router: "TaskFileRouter | None" = None


def logs_dir() -> Path:
    return ConfigLocator().logs_dir


def _record_task_id(record: logging.LogRecord) -> str | None:
    # structlog hands its event dict to stdlib as the record message.
    if isinstance(record.msg, dict):
        return record.msg.get("task_id")
    return getattr(record, "task_id", None)


class TaskFileRouter(logging.Handler):
    """Copy records carrying a ``task_id`` into that task's log file.

    Only tasks opened with :meth:`open_task` get a file; records for any other
    task id pass through untouched.
    """

    def __init__(self) -> None:
        super().__init__(logging.INFO)
        self._files: dict[str, logging.FileHandler] = {}

    def open_task(self, task_id: str, path: Path) -> None:
        self.acquire()
        try:
            if task_id in self._files:
                return
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, encoding="utf-8")
            handler.setFormatter(self.formatter)
            self._files[task_id] = handler
        finally:
            self.release()

    def close_task(self, task_id: str) -> None:
        self.acquire()
        try:
            handler = self._files.pop(task_id, None)
        finally:
            self.release()
        if handler is not None:
            handler.close()

    @property
    def open_tasks(self) -> list[str]:
        return sorted(self._files)

    def emit(self, record: logging.LogRecord) -> None:
        task_id = _record_task_id(record)
        handler = self._files.get(task_id) if task_id else None
        if handler is not None:
            handler.handle(record)

    def close(self) -> None:
        self.acquire()
        try:
            handlers, self._files = list(self._files.values()), {}
        finally:
            self.release()
        for handler in handlers:
            handler.close()
        super().close()


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Install the JSON handlers and structlog pipeline once; return the app logger."""

    global _configured, _router
    with _setup_lock:
        if not _configured:
            directory = logs_dir()
            level = "DEBUG" if verbose else "INFO"
            logging.config.dictConfig(
                {
                    "version": 1,
                    "disable_existing_loggers": False,
                    "formatters": {
                        "json": {
                            "()": "pythonjsonlogger.json.JsonFormatter",
                            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                        }
                    },
                    "handlers": {
                        "console": {"class": "logging.StreamHandler", "level": level, "formatter": "json"},
                        "worker_file": {
                            "class": "logging.FileHandler",
                            "level": "INFO",
                            "filename": str(directory / "worker.log"),
                            "formatter": "json",
                            "encoding": "utf-8",
                        },
                        "error_file": {
                            "class": "logging.FileHandler",
                            "level": "ERROR",
                            "filename": str(directory / "error.log"),
                            "formatter": "json",
                            "encoding": "utf-8",
                        },
                        "task_files": {"()": TaskFileRouter, "formatter": "json"},
                    },
                    "loggers": {
                        LOGGER_NAME: {
                            "handlers": ["console", "worker_file", "error_file", "task_files"],
                            "level": level,
                            "propagate": False,
                        },
                    },
                }
            )
            _router = next(
                handler for handler in logging.getLogger(LOGGER_NAME).handlers if isinstance(handler, TaskFileRouter)
            )
            structlog.configure(
                processors=[
                    structlog.contextvars.merge_contextvars,
                    structlog.processors.TimeStamper(fmt="iso"),
                    structlog.stdlib.add_log_level,
                    structlog.processors.StackInfoRenderer(),
                    structlog.processors.format_exc_info,
                    structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
                ],
                logger_factory=structlog.stdlib.LoggerFactory(),
                cache_logger_on_first_use=True,
            )
            _configured = True
    return structlog.get_logger(LOGGER_NAME)


def task_router() -> TaskFileRouter:
    configure_logging()
    if _router is None:
        raise RuntimeError("task log routing is not configured")
    return _router


def task_logger(task_id: str) -> structlog.BoundLogger:
    """Open ``logs/tasks/<task_id>.log`` and return a logger bound to the task.

    Every record bound to this task id, from any ``lead_crawler`` logger, is
    copied into the file until :func:`release_task_logger` closes it. The
    records still reach worker.log as usual.
    """

    task_router().open_task(task_id, ConfigLocator().task_logs_dir / f"{task_id}.log")
    return structlog.get_logger(f"{LOGGER_NAME}.task").bind(task_id=task_id)


def release_task_logger(task_id: str) -> None:
    task_router().close_task(task_id)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        return stream.readlines()[-line_count:]


def available_task_logs() -> Iterable[Path]:
    return sorted(ConfigLocator().task_logs_dir.glob("*.log"))


__all__ = [
    "TaskFileRouter",
    "available_task_logs",
    "configure_logging",
    "logs_dir",
    "release_task_logger",
    "tail_log",
    "task_logger",
    "task_router",
]
