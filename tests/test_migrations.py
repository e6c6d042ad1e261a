from pathlib import Path

import allure
from sqlalchemy import text

from lesson_forge.queue.models import ContentMode, JobParams
from lesson_forge.queue.repository import JobQueue

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    queue = JobQueue(tmp_path / "migrations.db")
    queue.init_schema()

    with queue.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('generation_jobs', 'job_events', 'job_checkpoints',
                               'meta_feedback', 'meta_feedback_history')
                ORDER BY name
                """,
            ),
        ).scalars().all()
    queue.close()

    assert version == "20261018_0001"
    assert tables == [
        "generation_jobs",
        "job_checkpoints",
        "job_events",
        "meta_feedback",
        "meta_feedback_history",
    ]


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = JobQueue(db_path)
    first.init_schema()
    job_id = first.enqueue("default_user", _params())
    first.close()

    second = JobQueue(db_path)
    second.init_schema()
    assert second.get_job(job_id) is not None
    second.close()


def _params() -> JobParams:
    return JobParams(topic="Recursion", subtopics="base case", mode=ContentMode.PRE_READ)
