"""Pydantic models used across Lead Crawler configuration flow."""

from __future__ import annotations

from pathlib import Path
from typing import Any, ClassVar, Literal, Mapping

from pydantic import BaseModel, Field, field_validator, model_validator


class WorkerConfig(BaseModel):
    """Background scheduler knobs: polling, capacity and stuck-task recovery."""

    poll_interval_seconds: float = 5.0
    max_concurrent: int = 2
    max_retries: int = 3
    stuck_timeout_minutes: float = 30.0
    stuck_batch_limit: int = 10

    @model_validator(mode="after")
    def _validate_bounds(self) -> "WorkerConfig":
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.stuck_timeout_minutes <= 0:
            raise ValueError("stuck_timeout_minutes must be > 0")
        if self.stuck_batch_limit < 1:
            raise ValueError("stuck_batch_limit must be >= 1")
        return self


class PipelineConfig(BaseModel):
    """Per-task pipeline limits."""

    max_queries: int = 3
    results_per_query: int = 10
    scrape_fanout: int = 10
    scrape_concurrency: int = 5
    search_timeout_seconds: float = 600.0
    dedup_batch_size: int = 1000
    # Use the raw intent as the only query when query generation fails.
    fallback_to_intent_query: bool = False

    @model_validator(mode="after")
    def _validate_positive(self) -> "PipelineConfig":
        for name in (
            "max_queries",
            "results_per_query",
            "scrape_fanout",
            "scrape_concurrency",
            "dedup_batch_size",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.search_timeout_seconds <= 0:
            raise ValueError("search_timeout_seconds must be > 0")
        return self


class ServicesConfig(BaseModel):
    """Endpoints and credentials for the external collaborators.

    Secrets are excluded from serialisation so they never land in YAML; the
    repository fills them from the environment on load.
    """

    secret_env_vars: ClassVar[dict[str, str]] = {
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_ASSISTANT_ID": "openai_assistant_id",
        "APIFY_API_TOKEN": "apify_token",
    }

    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: str = Field(default="", exclude=True)
    openai_assistant_id: str = Field(default="", exclude=True)
    openai_poll_interval_seconds: float = 1.0
    openai_max_wait_seconds: float = 120.0
    apify_base_url: str = "https://api.apify.com/v2"
    apify_token: str = Field(default="", exclude=True)
    google_maps_actor: str = "compass~crawler-google-places"
    web_scraper_actor: str = "apify~web-scraper"
    apify_poll_interval_seconds: float = 10.0
    apify_max_wait_seconds: float = 1800.0
    default_language: str = "en"
    default_region: str = "US"
    scrape_backend: Literal["apify", "http"] = "apify"
    request_timeout: float = 30.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )

    def with_environment(self, environ: Mapping[str, str]) -> "ServicesConfig":
        updates = {
            attribute: environ[name] for name, attribute in self.secret_env_vars.items() if environ.get(name)
        }
        return self.model_copy(update=updates) if updates else self


class ProgressConfig(BaseModel):
    """Client-side progress mirroring."""

    poll_interval_seconds: float = 5.0
    enable_progress_bar: bool = True

    @field_validator("poll_interval_seconds")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        return value


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class GlobalConfig(BaseModel):
    """Global controls shared by the API, worker and CLI."""

    database_path: Path = Field(default=Path("data/leads.db"))
    thread_pool_workers: int = 16
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    services: ServicesConfig = Field(default_factory=ServicesConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_database_path(self, base_dir: Path) -> Path:
        """Return the database path, resolving relative paths against ``base_dir``."""

        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path

    def with_environment(self, environ: Mapping[str, str]) -> "GlobalConfig":
        """Copy with credentials taken from ``environ``; unchanged when none are set."""

        services = self.services.with_environment(environ)
        if services is self.services:
            return self
        return self.model_copy(update={"services": services})


__all__ = [
    "ApiConfig",
    "GlobalConfig",
    "PipelineConfig",
    "ProgressConfig",
    "ServicesConfig",
    "WorkerConfig",
]
