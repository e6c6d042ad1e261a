"""Controllers for lesson-forge CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from lesson_forge.config import Settings
from lesson_forge.feedback.repository import MetaFeedbackRepository
from lesson_forge.pipeline.backend import CliGenerationBackend, GenerationBackend
from lesson_forge.pipeline.formatter import count_items
from lesson_forge.pipeline.meta_quality import MetaQualityAnalyzer
from lesson_forge.pipeline.orchestrator import ContentPipeline
from lesson_forge.pipeline.scripted import ScriptedBackend
from lesson_forge.quality.gate import chain_accuracy_report
from lesson_forge.queue.models import (
    AssignmentCounts,
    ContentMode,
    JobNotFoundError,
    JobParams,
    JobStatus,
)
from lesson_forge.queue.repository import JobQueue
from lesson_forge.worker import GenerationWorker


@dataclass(slots=True)
class EnqueueJobCommand:
    """CLI input for job enqueue."""

    db_path: Path | None
    topic: str
    subtopics: str
    mode: str
    transcript_path: Path | None
    mcsc: int
    mcmc: int
    subjective: int


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: str
    show_content: bool = False


@dataclass(slots=True)
class MutateJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class SweepJobsCommand:
    db_path: Path | None
    stale_seconds: int | None
    limit: int | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    backend: str | None = None


@dataclass(slots=True)
class FeedbackShowCommand:
    db_path: Path | None
    mode: str | None


@dataclass(slots=True)
class FeedbackClearCommand:
    db_path: Path | None
    mode: str
    actor: str


@dataclass(slots=True)
class FeedbackHistoryCommand:
    db_path: Path | None
    mode: str | None
    limit: int


class LessonForgeCliController:
    """Coordinates queue, worker, feedback and quality CLI operations."""

    def enqueue(self, command: EnqueueJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        mode = ContentMode(command.mode)
        transcript = None
        if command.transcript_path is not None:
            transcript = command.transcript_path.read_text("utf-8")
        params = JobParams(
            topic=command.topic,
            subtopics=command.subtopics,
            mode=mode,
            transcript=transcript,
            assignment_counts=(
                AssignmentCounts(
                    mcsc=command.mcsc,
                    mcmc=command.mcmc,
                    subjective=command.subjective,
                )
                if mode == ContentMode.ASSIGNMENT
                else None
            ),
        )
        with _queue(settings) as queue:
            job_id = queue.enqueue(settings.user_context.user_id, params)
        return [f"Job enqueued: job_id={job_id} mode={mode.value} status=queued"]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _queue(settings) as queue:
            jobs = queue.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} mode={job.mode.value} status={job.status.value} "
                f"step={job.current_step} topic={job.params.topic!r} "
                f"updated_at={job.updated_at.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            progress = queue.get_job_status(command.job_id)
            job = queue.get_job(command.job_id)
            checkpoint = queue.latest_checkpoint(command.job_id)
        if progress is None or job is None:
            raise JobNotFoundError(command.job_id)

        formatted = (job.assignment_data or {}).get("formatted")
        lines = [
            f"Job: {job.job_id}",
            f"Mode: {job.mode.value}",
            f"Topic: {job.params.topic}",
            f"Status: {progress.status.value}",
            f"Progress: {progress.progress:.0f}% "
            f"(step {progress.current_step}/{progress.total_steps}, {progress.current_agent})",
            f"Locked by: {job.locked_by or '-'}",
            f"Cost: ${job.estimated_cost:.4f}",
            f"Error: {progress.error_message or '-'}",
            f"Checkpoint: {checkpoint.step_name if checkpoint else '-'}",
            f"Content chars: {len(job.final_content or '')}",
        ]
        if job.mode == ContentMode.ASSIGNMENT:
            lines.append(f"Assignment items: {count_items(formatted)}")
        if job.gap_analysis:
            lines.append(
                "Gap analysis: "
                f"covered={len(job.gap_analysis.get('covered', []))} "
                f"partial={len(job.gap_analysis.get('partially_covered', []))} "
                f"missing={len(job.gap_analysis.get('not_covered', []))}",
            )
        lines.append(f"Events: {len(progress.events)}")
        for event in progress.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type.value} "
                f"{event.agent_name}/{event.action} {event.message}".rstrip(),
            )
        if command.show_content and job.final_content:
            lines.extend(["", job.final_content])
        return lines

    def retry_job(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            queue.retry_job(command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def cancel_job(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _queue(settings) as queue:
            queue.cancel_job(command.job_id)
        return [f"Job cancelled: {command.job_id}"]

    def sweep(self, command: SweepJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_seconds = (
            command.stale_seconds
            if command.stale_seconds is not None
            else settings.worker.stale_job_seconds
        )
        with _queue(settings) as queue:
            recovered = queue.recover_stale_jobs(
                stale_after=timedelta(seconds=stale_seconds),
                limit=command.limit or settings.worker.stale_sweep_limit,
            )
        lines = [f"Stale jobs requeued: {len(recovered)}"]
        lines.extend(f"  {job_id}" for job_id in recovered)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.backend is not None:
            settings.backend.kind = command.backend
        settings.validate_for_worker()
        backend = build_backend(settings)
        with _queue(settings) as queue, _feedback(settings) as feedback:
            worker = GenerationWorker(
                queue=queue,
                pipeline=ContentPipeline(
                    backend,
                    model=settings.backend.model,
                    max_retries=settings.quality.max_retries,
                    review_max_loops=settings.quality.review_max_loops,
                ),
                worker_id=settings.worker.worker_id,
                feedback=feedback,
                meta_analyzer=(
                    MetaQualityAnalyzer(
                        backend,
                        model=settings.backend.model,
                        max_retries=settings.quality.max_retries,
                    )
                    if settings.worker.meta_analysis_enabled
                    else None
                ),
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                stale_job_seconds=settings.worker.stale_job_seconds,
                stale_sweep_limit=settings.worker.stale_sweep_limit,
                heartbeat_seconds=settings.worker.heartbeat_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"recovered={summary.recovered} idle_polls={summary.idle_polls}",
        ]

    def show_feedback(self, command: FeedbackShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _feedback(settings) as feedback:
            if command.mode is not None:
                record = feedback.get_feedback(ContentMode(command.mode).value)
                records = [record] if record is not None else []
            else:
                records = feedback.list_feedback()
            total_issues = feedback.total_issue_count()

        if not records:
            return ["No feedback recorded yet."]
        lines = [f"Feedback modes: {len(records)} (issue clusters: {total_issues})"]
        for record in records:
            content = record.content
            lines.append(
                f"{record.mode}: generations={record.generation_count} "
                f"updated_at={record.last_updated.isoformat()}",
            )
            for name, value in content.scores.to_dict().items():
                trend = content.trends.get(name)
                lines.append(f"  {name}={value:.1f} ({trend.value if trend else '-'})")
            for cluster in content.issue_clusters:
                lines.append(
                    f"  issue {cluster.agent}/{cluster.category.value} "
                    f"x{cluster.frequency} [{cluster.severity.value}] {cluster.description}",
                )
            for strength in content.strengths:
                lines.append(f"  strength: {strength}")
            if content.overall_assessment:
                lines.append(f"  summary: {content.overall_assessment}")
        return lines

    def clear_feedback(self, command: FeedbackClearCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        mode = ContentMode(command.mode).value
        with _feedback(settings) as feedback:
            cleared = feedback.clear_feedback(mode, command.actor)
        if not cleared:
            return [f"No feedback to clear for mode={mode}"]
        return [f"Feedback archived and reset: mode={mode} by={command.actor}"]

    def feedback_history(self, command: FeedbackHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        mode = ContentMode(command.mode).value if command.mode is not None else None
        with _feedback(settings) as feedback:
            entries = feedback.list_history(mode=mode, limit=command.limit)

        lines = [f"History entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.acknowledged_at.isoformat()} mode={entry.mode} "
                f"generations={entry.generation_count} by={entry.acknowledged_by}",
            )
        return lines

    def chain_report(self, *, chain_length: int, target: float) -> list[str]:
        return chain_accuracy_report(chain_length, target=target)


def build_backend(settings: Settings) -> GenerationBackend:
    if settings.backend.kind == "scripted":
        return ScriptedBackend()
    return CliGenerationBackend(
        command_template=settings.backend.command_template,
        timeout_seconds=settings.backend.timeout_seconds,
    )


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


@contextmanager
def _queue(settings: Settings) -> Iterator[JobQueue]:
    settings.validate()
    queue = JobQueue(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    queue.init_schema()
    try:
        yield queue
    finally:
        queue.close()


@contextmanager
def _feedback(settings: Settings) -> Iterator[MetaFeedbackRepository]:
    settings.validate()
    repository = MetaFeedbackRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
