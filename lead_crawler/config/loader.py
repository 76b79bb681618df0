"""Locate the Lead Crawler home directory and persist ``GlobalConfig`` as YAML."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from .models import GlobalConfig

GLOBAL_CONFIG_FILENAME = "global_config.yaml"
HOME_ENV_VAR = "LEAD_CRAWLER_HOME"


def resolve_home(fallback: Path | None = None) -> Path:
    """``$LEAD_CRAWLER_HOME`` when set, else ``fallback``, else the checkout root."""

    env_root = os.environ.get(HOME_ENV_VAR)
    if env_root:
        return Path(env_root).expanduser().resolve()
    return (fallback or Path(__file__).resolve().parents[2]).resolve()


@dataclass(slots=True)
class ConfigLocator:
    """Directory layout under the home: ``data/`` and ``logs/tasks/``."""

    project_root: Path | None = None

    def __post_init__(self) -> None:
        self.project_root = resolve_home(self.project_root)
        self.task_logs_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def data_dir(self) -> Path:
        return self.project_root / "data"

    @property
    def logs_dir(self) -> Path:
        return self.project_root / "logs"

    @property
    def task_logs_dir(self) -> Path:
        return self.logs_dir / "tasks"

    def global_config_path(self) -> Path:
        return self.data_dir / GLOBAL_CONFIG_FILENAME


class ConfigRepository:
    """Load, cache and save the global configuration file.

    A missing file is created from the defaults on first load. Credentials are
    overlaid from the environment after every read and are excluded from what
    gets written back.
    """

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._cached: GlobalConfig | None = None

    def load_global_config(self, refresh: bool = False) -> GlobalConfig:
        if self._cached is not None and not refresh:
            return self._cached
        path = self.locator.global_config_path()
        if path.exists():
            document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            if not isinstance(document, dict):
                raise ValueError(f"Configuration file must contain a mapping: {path}")
            config = GlobalConfig.model_validate(document)
        else:
            config = GlobalConfig()
            self.save_global_config(config)
        self._cached = config.with_environment(os.environ)
        return self._cached

    def save_global_config(self, config: GlobalConfig) -> None:
        with self.locator.global_config_path().open("w", encoding="utf-8") as stream:
            yaml.safe_dump(config.model_dump(mode="json"), stream, allow_unicode=True, sort_keys=False)
        self._cached = config

    def database_path(self) -> Path:
        return self.load_global_config().resolved_database_path(self.locator.project_root)


__all__ = ["ConfigLocator", "ConfigRepository", "GLOBAL_CONFIG_FILENAME", "HOME_ENV_VAR", "resolve_home"]
