from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from lead_crawler.config import ConfigLocator, ConfigRepository, GlobalConfig, WorkerConfig


def test_config_locator_uses_env_and_creates_directories(lead_home: Path) -> None:
    locator = ConfigLocator(project_root=Path("/ignored"))

    assert locator.project_root == lead_home.resolve()
    assert locator.data_dir.exists()
    assert locator.logs_dir.exists()
    assert locator.global_config_path() == lead_home.resolve() / "data" / "global_config.yaml"


def test_first_load_writes_defaults(temp_config_repository: ConfigRepository) -> None:
    config = temp_config_repository.load_global_config()
    path = temp_config_repository.locator.global_config_path()

    assert config == GlobalConfig()
    assert path.exists()
    assert yaml.safe_load(path.read_text(encoding="utf-8"))["worker"]["max_concurrent"] == 2
    assert temp_config_repository.load_global_config() is config


def test_roundtrip_keeps_overrides(temp_config_repository: ConfigRepository) -> None:
    config = GlobalConfig(worker=WorkerConfig(max_concurrent=4, poll_interval_seconds=1.5))
    temp_config_repository.save_global_config(config)

    fresh = ConfigRepository(temp_config_repository.locator)
    loaded = fresh.load_global_config()

    assert loaded.worker.max_concurrent == 4
    assert loaded.worker.poll_interval_seconds == 1.5
    assert loaded == config


def test_secrets_come_from_environment_and_are_never_written(
    temp_config_repository: ConfigRepository, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("APIFY_API_TOKEN", "apify-test")

    config = temp_config_repository.load_global_config()
    temp_config_repository.save_global_config(config)

    assert config.services.openai_api_key == "sk-test"
    assert config.services.apify_token == "apify-test"
    assert config.services.openai_assistant_id == ""
    written = temp_config_repository.locator.global_config_path().read_text(encoding="utf-8")
    assert "sk-test" not in written
    assert "apify-test" not in written


def test_relative_database_path_resolves_under_home(temp_config_repository: ConfigRepository) -> None:
    path = temp_config_repository.database_path()
    assert path == temp_config_repository.locator.project_root / "data" / "leads.db"


def test_non_mapping_file_is_rejected(temp_config_repository: ConfigRepository) -> None:
    temp_config_repository.locator.global_config_path().write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        temp_config_repository.load_global_config()


def test_refresh_rereads_the_file(temp_config_repository: ConfigRepository) -> None:
    first = temp_config_repository.load_global_config()
    path = temp_config_repository.locator.global_config_path()
    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    document["worker"]["max_concurrent"] = 6
    path.write_text(yaml.safe_dump(document), encoding="utf-8")

    assert temp_config_repository.load_global_config() is first
    assert temp_config_repository.load_global_config(refresh=True).worker.max_concurrent == 6


def test_locator_creates_task_log_directory(lead_home: Path) -> None:
    locator = ConfigLocator()
    assert locator.task_logs_dir == lead_home.resolve() / "logs" / "tasks"
    assert locator.task_logs_dir.is_dir()
