"""Runtime configuration for the generation queue, worker and quality gate."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_BACKENDS = ("cli", "scripted")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class WorkerSettings:
    """Worker loop settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    stale_job_seconds: int = 120
    heartbeat_seconds: float = 30.0
    stale_sweep_limit: int = 10
    meta_analysis_enabled: bool = True


@dataclass(slots=True)
class QualitySettings:
    """Quality gate and review loop settings."""

    max_retries: int = 2
    review_max_loops: int = 3


@dataclass(slots=True)
class BackendSettings:
    """Generation backend selection."""

    kind: str = "cli"
    command_template: str = ""
    model: str = "default"
    timeout_seconds: int = 600


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".lesson_forge.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    quality: QualitySettings = field(default_factory=QualitySettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("LESSON_FORGE_DB_PATH", ".lesson_forge.db")),
            sqlite_busy_timeout_ms=int(os.getenv("LESSON_FORGE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("LESSON_FORGE_LOG_LEVEL", "WARNING").strip().upper(),
            worker=WorkerSettings(
                worker_id=os.getenv("LESSON_FORGE_WORKER_ID", "worker-local"),
                poll_interval_seconds=float(
                    os.getenv("LESSON_FORGE_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_job_seconds=int(os.getenv("LESSON_FORGE_STALE_JOB_SECONDS", "120")),
                heartbeat_seconds=float(os.getenv("LESSON_FORGE_HEARTBEAT_SECONDS", "30")),
                stale_sweep_limit=int(os.getenv("LESSON_FORGE_STALE_SWEEP_LIMIT", "10")),
                meta_analysis_enabled=_env_bool(
                    "LESSON_FORGE_META_ANALYSIS_ENABLED",
                    default=True,
                ),
            ),
            quality=QualitySettings(
                max_retries=int(os.getenv("LESSON_FORGE_QUALITY_MAX_RETRIES", "2")),
                review_max_loops=int(os.getenv("LESSON_FORGE_REVIEW_MAX_LOOPS", "3")),
            ),
            backend=BackendSettings(
                kind=os.getenv("LESSON_FORGE_BACKEND", "cli").strip().lower(),
                command_template=os.getenv("LESSON_FORGE_BACKEND_COMMAND_TEMPLATE", ""),
                model=os.getenv("LESSON_FORGE_BACKEND_MODEL", "default"),
                timeout_seconds=int(os.getenv("LESSON_FORGE_BACKEND_TIMEOUT_SECONDS", "600")),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("LESSON_FORGE_USER_ID", "default_user"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("LESSON_FORGE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(
                f"Unsupported LESSON_FORGE_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of: {', '.join(SUPPORTED_LOG_LEVELS)}.",
            )
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("LESSON_FORGE_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.stale_job_seconds < 0:
            raise ValueError("LESSON_FORGE_STALE_JOB_SECONDS must be >= 0 (0 disables).")
        if self.worker.stale_job_seconds and not (
            0 < self.worker.heartbeat_seconds < self.worker.stale_job_seconds
        ):
            raise ValueError(
                "LESSON_FORGE_HEARTBEAT_SECONDS must be > 0 and shorter than "
                "LESSON_FORGE_STALE_JOB_SECONDS.",
            )
        if self.worker.stale_sweep_limit <= 0:
            raise ValueError("LESSON_FORGE_STALE_SWEEP_LIMIT must be > 0.")
        if self.quality.max_retries < 0:
            raise ValueError("LESSON_FORGE_QUALITY_MAX_RETRIES must be >= 0.")
        if self.quality.review_max_loops <= 0:
            raise ValueError("LESSON_FORGE_REVIEW_MAX_LOOPS must be > 0.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot build its backend."""

        self.validate()
        if self.backend.kind not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported LESSON_FORGE_BACKEND: {self.backend.kind!r}. "
                f"Expected one of: {', '.join(SUPPORTED_BACKENDS)}.",
            )
        if self.backend.kind == "cli" and "{prompt" not in self.backend.command_template:
            raise ValueError(
                "LESSON_FORGE_BACKEND_COMMAND_TEMPLATE must include {prompt} or {prompt_file} "
                "when LESSON_FORGE_BACKEND=cli.",
            )
        if self.backend.timeout_seconds <= 0:
            raise ValueError("LESSON_FORGE_BACKEND_TIMEOUT_SECONDS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
