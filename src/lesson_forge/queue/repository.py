"""Persistent job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from lesson_forge.queue.models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    WORKING_STATUSES,
    AssignmentCounts,
    CheckpointView,
    ContentMode,
    JobEventType,
    JobEventView,
    JobEventWrite,
    JobNotFoundError,
    JobParams,
    JobProgress,
    JobResult,
    JobStatus,
    JobView,
    total_steps_for_mode,
)
from lesson_forge.storage.alembic_runner import upgrade_head
from lesson_forge.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from lesson_forge.storage.sqlmodel_models import GenerationJob, JobCheckpoint, JobEvent

CANCELLED_MESSAGE = "Job cancelled by user"
DEFAULT_FAILURE_MESSAGE = "Generation failed"
_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


class JobStateError(RuntimeError):
    """Operator mutation is not allowed from the job's current status."""


class JobQueue:
    """Job lifecycle persistence.

    Every mutation is a single conditional UPDATE; the store is the only
    coordination point between workers.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, owner_id: str, params: JobParams) -> str:
        """Create a queued job and return its id."""

        now = to_db_datetime(utc_now())
        job_id = str(uuid4())
        counts_json = (
            json.dumps(params.assignment_counts.to_dict(), sort_keys=True)
            if params.assignment_counts is not None
            else None
        )
        with Session(self.engine) as session:
            session.add(
                GenerationJob(
                    job_id=job_id,
                    owner_id=owner_id,
                    topic=params.topic,
                    subtopics=params.subtopics,
                    mode=params.mode.value,
                    transcript=params.transcript,
                    assignment_counts_json=counts_json,
                    status=JobStatus.QUEUED.value,
                    current_step=0,
                    assignment_data_json=(
                        json.dumps({"counts": params.assignment_counts.to_dict()}, sort_keys=True)
                        if params.assignment_counts is not None
                        else None
                    ),
                    estimated_cost=0.0,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event=JobEventWrite(
                    event_type=JobEventType.STEP,
                    agent_name="JobQueue",
                    action="enqueued",
                    message=f"Job queued: {params.mode.value} on {params.topic}",
                ),
            )
            session.commit()
        return job_id

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(GenerationJob).order_by(col(GenerationJob.created_at).desc())
            if status is not None:
                statement = statement.where(GenerationJob.status == status.value)
            rows = session.exec(statement.limit(limit)).all()
            return [_to_job_view(row) for row in rows]

    def claim_job(self, job_id: str, *, worker_id: str) -> JobView | None:
        """Take ownership of one job; None means someone else owns it or it is done."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).in_([status.value for status in CLAIMABLE_STATUSES]),
                    col(GenerationJob.locked_by).is_(None),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    locked_by=worker_id,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            self._add_event(
                session=session,
                job_id=job_id,
                event=JobEventWrite(
                    event_type=JobEventType.STEP,
                    agent_name="JobQueue",
                    action="claimed",
                    message=f"Claimed by {worker_id}",
                    data={"worker_id": worker_id},
                ),
            )
            session.commit()
            row = session.get(GenerationJob, job_id)
            if row is None:  # pragma: no cover - deleted right after claim
                return None
            session.refresh(row)
            return _to_job_view(row)

    def claim_next_job(self, *, worker_id: str) -> JobView | None:
        """Claim the oldest queued job, looping over lost races."""

        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(GenerationJob.job_id)
                    .where(
                        GenerationJob.status == JobStatus.QUEUED.value,
                        col(GenerationJob.locked_by).is_(None),
                    )
                    .order_by(col(GenerationJob.created_at).asc())
                    .limit(1),
                ).one_or_none()
            if candidate is None:
                return None
            claimed = self.claim_job(candidate, worker_id=worker_id)
            if claimed is not None:
                return claimed

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        event: JobEventWrite | None = None,
    ) -> bool:
        """Move a job to ``status``; terminal statuses always release the lock.

        Non-terminal transitions never overwrite a job that already ended.
        """

        values: dict[str, Any] = {
            "status": status.value,
            "updated_at": to_db_datetime(utc_now()),
        }
        conditions = [col(GenerationJob.job_id) == job_id]
        if status.is_terminal:
            values["locked_by"] = None
        else:
            conditions.append(col(GenerationJob.status).not_in(_TERMINAL_VALUES))
        with Session(self.engine) as session:
            result = session.exec(sa_update(GenerationJob).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return False
            if event is not None:
                self._add_event(session=session, job_id=job_id, event=event)
            session.commit()
        return True

    def update_step(
        self,
        job_id: str,
        step: int,
        status: JobStatus,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Record progress.

        False when the job already reached a terminal status or, with ``worker_id``,
        when that worker no longer holds the lock.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_live_job_conditions(job_id, worker_id))
                .values(
                    current_step=step,
                    status=status.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def touch_job(self, job_id: str, *, worker_id: str) -> bool:
        """Heartbeat: refresh ``updated_at`` while ``worker_id`` still holds the job."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationJob)
                .where(*_live_job_conditions(job_id, worker_id))
                .values(updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def log_event(self, job_id: str, event: JobEventWrite) -> None:
        """Append one immutable event."""

        with Session(self.engine) as session:
            self._add_event(session=session, job_id=job_id, event=event)
            session.commit()

    def save_result(
        self,
        job_id: str,
        result: JobResult,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Terminal write of content, side results, cost and error in one update.

        A cancelled result only lands on a job that was cancelled, so partial content
        survives without touching any other terminal row. Any other result only lands
        on a live job, locked by ``worker_id`` when one is given.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            status = JobStatus.COMPLETED if result.success else JobStatus.FAILED
            values: dict[str, Any] = {
                "status": status.value,
                "final_content": result.content,
                "assignment_data_json": (
                    json.dumps({"formatted": result.formatted}, ensure_ascii=False)
                    if result.formatted is not None
                    else None
                ),
                "gap_analysis_json": (
                    json.dumps(result.gap_analysis, ensure_ascii=False, sort_keys=True)
                    if result.gap_analysis is not None
                    else None
                ),
                "estimated_cost": result.cost,
                "error_message": None
                if result.success
                else (result.error or DEFAULT_FAILURE_MESSAGE),
                "locked_by": None,
                "updated_at": now,
            }
            if result.success:
                values["current_step"] = total_steps_for_mode(ContentMode(row.mode))
            if result.cancelled:
                conditions = [
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == JobStatus.FAILED.value,
                    col(GenerationJob.error_message) == CANCELLED_MESSAGE,
                ]
            else:
                conditions = _live_job_conditions(job_id, worker_id)
            update_result = session.exec(
                sa_update(GenerationJob).where(*conditions).values(**values),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        return True

    def cancel_job(self, job_id: str) -> None:
        """Mark a live job failed with the cancellation message.

        Only the status is written here; a worker running the job notices at its
        next step boundary.
        """

        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            previous = JobStatus(row.status)
            if previous.is_terminal:
                raise JobStateError(f"Job cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status).not_in(_TERMINAL_VALUES),
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=CANCELLED_MESSAGE,
                    locked_by=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    "Job state changed concurrently while cancelling; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event=JobEventWrite(
                    event_type=JobEventType.STEP,
                    agent_name="JobQueue",
                    action="cancelled",
                    message=CANCELLED_MESSAGE,
                    data={"previous_status": previous.value},
                ),
            )
            session.commit()

    def retry_job(self, job_id: str) -> None:
        """Operator retry: back to queued, step 0, error and lock cleared.

        Generated content and checkpoints are kept for the next run.
        """

        with Session(self.engine) as session:
            row = session.get(GenerationJob, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            previous = JobStatus(row.status)
            if not previous.is_terminal:
                raise JobStateError(
                    f"Only completed/failed jobs can be retried, got {row.status}.",
                )

            result = session.exec(
                sa_update(GenerationJob)
                .where(
                    col(GenerationJob.job_id) == job_id,
                    col(GenerationJob.status) == previous.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    error_message=None,
                    locked_by=None,
                    current_step=0,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event=JobEventWrite(
                    event_type=JobEventType.STEP,
                    agent_name="JobQueue",
                    action="retry",
                    message="Retrying job from beginning",
                    data={"previous_status": previous.value},
                ),
            )
            session.commit()

    def is_terminal(self, job_id: str) -> bool:
        """Current status read used for cross-process cancellation polling."""

        with Session(self.engine) as session:
            status = session.exec(
                select(GenerationJob.status).where(GenerationJob.job_id == job_id),
            ).one_or_none()
        if status is None:
            return True
        return JobStatus(status).is_terminal

    def list_events(self, job_id: str) -> list[JobEventView]:
        """Ordered event log of one job."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            return [_to_event_view(row) for row in rows]

    def get_job_status(self, job_id: str) -> JobProgress | None:
        """Rebuild the progress view from the job row and its event log."""

        job = self.get_job(job_id)
        if job is None:
            return None
        events = self.list_events(job_id)
        total_steps = total_steps_for_mode(job.mode)
        progress = min(job.current_step / total_steps * 100, 100.0)
        return JobProgress(
            job_id=job_id,
            status=job.status,
            progress=progress,
            current_agent=events[-1].agent_name if events else "Queued",
            current_step=job.current_step,
            total_steps=total_steps,
            error_message=job.error_message,
            events=events,
        )

    def save_checkpoint(
        self,
        job_id: str,
        *,
        step_number: int,
        step_name: str,
        content: str,
        worker_id: str | None = None,
    ) -> CheckpointView | None:
        """Persist a content snapshot; step numbers strictly increase per job.

        With ``worker_id`` nothing is written, and None is returned, unless that
        worker still holds the live job.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if worker_id is not None:
                owned = session.exec(
                    select(GenerationJob.job_id).where(*_live_job_conditions(job_id, worker_id)),
                ).one_or_none()
                if owned is None:
                    return None
            latest = session.exec(
                select(func.max(JobCheckpoint.step_number)).where(
                    JobCheckpoint.job_id == job_id,
                ),
            ).one()
            if latest is not None and step_number <= latest:
                raise ValueError(
                    f"Checkpoint step must increase: got {step_number} after {latest} "
                    f"(job_id={job_id}).",
                )
            row = JobCheckpoint(
                job_id=job_id,
                step_number=step_number,
                step_name=step_name,
                content_snapshot=content,
                created_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event=JobEventWrite(
                    event_type=JobEventType.CHECKPOINT,
                    agent_name="Checkpoint",
                    action=step_name,
                    message=f"Checkpoint saved: {step_name}",
                    data={"step_number": step_number, "content_chars": len(content)},
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_checkpoint_view(row)

    def latest_checkpoint(self, job_id: str) -> CheckpointView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobCheckpoint)
                .where(JobCheckpoint.job_id == job_id)
                .order_by(col(JobCheckpoint.step_number).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return _to_checkpoint_view(row)

    def recover_stale_jobs(self, *, stale_after: timedelta, limit: int = 10) -> list[str]:
        """Requeue working jobs whose last update is older than ``stale_after``."""

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        working = [status.value for status in WORKING_STATUSES]
        recovered: list[str] = []
        with Session(self.engine) as session:
            candidates = session.exec(
                select(GenerationJob)
                .where(
                    col(GenerationJob.status).in_(working),
                    col(GenerationJob.updated_at) < cutoff,
                )
                .order_by(col(GenerationJob.updated_at).asc())
                .limit(limit),
            ).all()
            for candidate in candidates:
                result = session.exec(
                    sa_update(GenerationJob)
                    .where(
                        col(GenerationJob.job_id) == candidate.job_id,
                        col(GenerationJob.status).in_(working),
                        col(GenerationJob.updated_at) < cutoff,
                    )
                    .values(
                        status=JobStatus.QUEUED.value,
                        locked_by=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=candidate.job_id,
                    event=JobEventWrite(
                        event_type=JobEventType.STEP,
                        agent_name="JobQueue",
                        action="stale_requeued",
                        message="Stale job reset to queued",
                        data={
                            "previous_status": candidate.status,
                            "locked_by": candidate.locked_by,
                        },
                    ),
                )
                recovered.append(candidate.job_id)
            session.commit()
        return recovered

    def _add_event(self, *, session: Session, job_id: str, event: JobEventWrite) -> None:
        now = utc_now()
        metadata: dict[str, Any] = {"action": event.action, "timestamp": now.isoformat()}
        if event.data:
            metadata["data"] = event.data
        if event.prompt_tokens is not None:
            metadata["prompt_tokens"] = event.prompt_tokens
        if event.completion_tokens is not None:
            metadata["completion_tokens"] = event.completion_tokens
        if event.cost is not None:
            metadata["cost"] = event.cost
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event.event_type.value,
                agent_name=event.agent_name,
                action=event.action,
                message=event.message,
                metadata_json=json.dumps(metadata, ensure_ascii=False, sort_keys=True),
                created_at=to_db_datetime(now),
            ),
        )


def _live_job_conditions(job_id: str, worker_id: str | None) -> list[Any]:
    conditions = [
        col(GenerationJob.job_id) == job_id,
        col(GenerationJob.status).not_in(_TERMINAL_VALUES),
    ]
    if worker_id is not None:
        conditions.append(col(GenerationJob.locked_by) == worker_id)
    return conditions


def _load_json_dict(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return None
    return parsed


def _to_job_view(row: GenerationJob) -> JobView:
    counts = _load_json_dict(row.assignment_counts_json)
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        params=JobParams(
            topic=row.topic,
            subtopics=row.subtopics,
            mode=ContentMode(row.mode),
            transcript=row.transcript,
            assignment_counts=AssignmentCounts.from_dict(counts) if counts is not None else None,
        ),
        status=JobStatus(row.status),
        current_step=row.current_step,
        locked_by=row.locked_by,
        final_content=row.final_content,
        assignment_data=_load_json_dict(row.assignment_data_json),
        gap_analysis=_load_json_dict(row.gap_analysis_json),
        estimated_cost=row.estimated_cost,
        error_message=row.error_message,
        meta_analysis_completed=row.meta_analysis_completed,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: JobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.id or 0,
        job_id=row.job_id,
        event_type=JobEventType(row.event_type),
        agent_name=row.agent_name,
        action=row.action,
        message=row.message,
        metadata=_load_json_dict(row.metadata_json) or {},
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_checkpoint_view(row: JobCheckpoint) -> CheckpointView:
    return CheckpointView(
        job_id=row.job_id,
        step_number=row.step_number,
        step_name=row.step_name,
        content_snapshot=row.content_snapshot,
        created_at=to_utc_aware_datetime(row.created_at),
    )
