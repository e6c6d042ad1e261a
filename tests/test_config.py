from __future__ import annotations

from pathlib import Path

import allure
import pytest

from lesson_forge.config import BackendSettings, QualitySettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "LESSON_FORGE_DB_PATH",
        "LESSON_FORGE_BACKEND",
        "LESSON_FORGE_REVIEW_MAX_LOOPS",
        "LESSON_FORGE_STALE_JOB_SECONDS",
        "LESSON_FORGE_HEARTBEAT_SECONDS",
        "LESSON_FORGE_META_ANALYSIS_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".lesson_forge.db")
    assert settings.backend.kind == "cli"
    assert settings.quality.review_max_loops == 3
    assert settings.quality.max_retries == 2
    assert settings.worker.stale_job_seconds == 120
    assert settings.worker.heartbeat_seconds == 30.0
    assert settings.worker.meta_analysis_enabled is True


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LESSON_FORGE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("LESSON_FORGE_BACKEND", " Scripted ")
    monkeypatch.setenv("LESSON_FORGE_LOG_LEVEL", "debug")
    monkeypatch.setenv("LESSON_FORGE_REVIEW_MAX_LOOPS", "5")
    monkeypatch.setenv("LESSON_FORGE_META_ANALYSIS_ENABLED", "off")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.backend.kind == "scripted"
    assert settings.log_level == "DEBUG"
    assert settings.quality.review_max_loops == 5
    assert settings.worker.meta_analysis_enabled is False


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LESSON_FORGE_DB_PATH", str(tmp_path / "env.db"))
    settings = Settings.from_env(db_path=tmp_path / "cli.db")
    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_env_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LESSON_FORGE_META_ANALYSIS_ENABLED", "sometimes")
    with pytest.raises(ValueError, match="LESSON_FORGE_META_ANALYSIS_ENABLED"):
        Settings.from_env()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="LESSON_FORGE_LOG_LEVEL"):
        Settings(log_level="LOUD").validate()


def test_validate_rejects_zero_review_loops() -> None:
    with pytest.raises(ValueError, match="LESSON_FORGE_REVIEW_MAX_LOOPS"):
        Settings(quality=QualitySettings(review_max_loops=0)).validate()


def test_validate_rejects_negative_stale_seconds() -> None:
    with pytest.raises(ValueError, match="LESSON_FORGE_STALE_JOB_SECONDS"):
        Settings(worker=WorkerSettings(stale_job_seconds=-1)).validate()


def test_validate_requires_heartbeat_shorter_than_stale_window() -> None:
    with pytest.raises(ValueError, match="LESSON_FORGE_HEARTBEAT_SECONDS"):
        Settings(worker=WorkerSettings(stale_job_seconds=60, heartbeat_seconds=60)).validate()
    with pytest.raises(ValueError, match="LESSON_FORGE_HEARTBEAT_SECONDS"):
        Settings(worker=WorkerSettings(heartbeat_seconds=0)).validate()

    Settings(worker=WorkerSettings(stale_job_seconds=0, heartbeat_seconds=0)).validate()


def test_validate_for_worker_rejects_unknown_backend() -> None:
    settings = Settings(backend=BackendSettings(kind="telepathy"))
    with pytest.raises(ValueError, match="Unsupported LESSON_FORGE_BACKEND"):
        settings.validate_for_worker()


def test_validate_for_worker_requires_prompt_placeholder_for_cli() -> None:
    settings = Settings(backend=BackendSettings(kind="cli", command_template="agent --fast"))
    with pytest.raises(ValueError, match="COMMAND_TEMPLATE"):
        settings.validate_for_worker()


def test_validate_for_worker_accepts_scripted_backend_without_template() -> None:
    Settings(backend=BackendSettings(kind="scripted")).validate_for_worker()
