"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from lesson_forge.feedback.repository import MetaFeedbackRepository
from lesson_forge.queue.repository import JobQueue

_SCRIPTED_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m lesson_forge.pipeline.scripted_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def scripted_agent_template() -> str:
    """CLI backend template that runs the deterministic local agent."""

    return _SCRIPTED_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "lesson_forge.db"


@pytest.fixture()
def queue(db_path: Path) -> Iterator[JobQueue]:
    job_queue = JobQueue(db_path)
    job_queue.init_schema()
    yield job_queue
    job_queue.close()


@pytest.fixture()
def feedback_repository(db_path: Path) -> Iterator[MetaFeedbackRepository]:
    repository = MetaFeedbackRepository(db_path)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def scripted_env(monkeypatch: pytest.MonkeyPatch, db_path: Path) -> Path:
    """Point settings at a temp DB, the scripted backend and a fast worker loop."""

    monkeypatch.setenv("LESSON_FORGE_DB_PATH", str(db_path))
    monkeypatch.setenv("LESSON_FORGE_BACKEND", "scripted")
    monkeypatch.setenv("LESSON_FORGE_WORKER_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.delenv("LESSON_FORGE_LLM_PRICING", raising=False)
    return db_path
