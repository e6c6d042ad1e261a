"""CLI entrypoint for lesson-forge."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from lesson_forge import __version__
from lesson_forge.config import SUPPORTED_BACKENDS, Settings
from lesson_forge.controllers import (
    EnqueueJobCommand,
    FeedbackClearCommand,
    FeedbackHistoryCommand,
    FeedbackShowCommand,
    InspectJobCommand,
    LessonForgeCliController,
    ListJobsCommand,
    MutateJobCommand,
    SweepJobsCommand,
    WorkerCommand,
)
from lesson_forge.queue.models import ContentMode, JobNotFoundError, JobStatus
from lesson_forge.queue.repository import JobStateError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = LessonForgeCliController()

_MODES = [mode.value for mode in ContentMode]
_STATUSES = [status.value for status in JobStatus]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="lesson-forge")
def lesson_forge() -> None:
    """Course content generation queue CLI."""

    level = Settings.from_env().log_level
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@lesson_forge.group()
def jobs() -> None:
    """Generation job queue commands."""


@jobs.command("enqueue")
@db_path_option
@click.option("--topic", required=True, help="Lesson topic.")
@click.option("--subtopics", default="", help="Comma separated subtopics.")
@click.option(
    "--mode",
    type=click.Choice(_MODES),
    default=ContentMode.LECTURE.value,
    show_default=True,
    help="Kind of material to generate.",
)
@click.option(
    "--transcript",
    "transcript_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Lecture transcript to ground the material in.",
)
@click.option("--mcsc", type=click.IntRange(min=0), default=4, show_default=True)
@click.option("--mcmc", type=click.IntRange(min=0), default=4, show_default=True)
@click.option("--subjective", type=click.IntRange(min=0), default=1, show_default=True)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    topic: str,
    subtopics: str,
    mode: str,
    transcript_path: Path | None,
    mcsc: int,
    mcmc: int,
    subjective: int,
) -> None:
    """Queue a new generation job. Question counts apply to assignment mode only."""

    _emit_lines(
        _run(
            CONTROLLER.enqueue,
            EnqueueJobCommand(
                db_path=db_path,
                topic=topic,
                subtopics=subtopics,
                mode=mode,
                transcript_path=transcript_path,
                mcsc=mcsc,
                mcmc=mcmc,
                subjective=subjective,
            ),
        ),
    )


@jobs.command("list")
@db_path_option
@click.option("--status", type=click.Choice(_STATUSES), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Maximum rows.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List newest jobs first."""

    _emit_lines(_run(CONTROLLER.list_jobs, ListJobsCommand(db_path, status, limit)))


@jobs.command("status")
@db_path_option
@click.argument("job_id")
@click.option("--content", "show_content", is_flag=True, help="Print the generated content.")
def jobs_status(db_path: Path | None, job_id: str, show_content: bool) -> None:
    """Show progress, result summary and the event log of one job."""

    _emit_lines(
        _run(CONTROLLER.inspect_job, InspectJobCommand(db_path, job_id, show_content)),
    )


@jobs.command("retry")
@db_path_option
@click.argument("job_id")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a completed or failed job."""

    _emit_lines(_run(CONTROLLER.retry_job, MutateJobCommand(db_path, job_id)))


@jobs.command("cancel")
@db_path_option
@click.argument("job_id")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a live job. A worker running it stops at its next step."""

    _emit_lines(_run(CONTROLLER.cancel_job, MutateJobCommand(db_path, job_id)))


@jobs.command("sweep")
@db_path_option
@click.option(
    "--stale-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Idle time before a working job counts as stale (default from settings).",
)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Maximum jobs to requeue.")
def jobs_sweep(db_path: Path | None, stale_seconds: int | None, limit: int | None) -> None:
    """Requeue jobs whose worker stopped reporting progress."""

    _emit_lines(_run(CONTROLLER.sweep, SweepJobsCommand(db_path, stale_seconds, limit)))


@lesson_forge.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@db_path_option
@click.option("--once", is_flag=True, help="Process at most one job and exit.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before exiting.",
)
@click.option(
    "--backend",
    type=click.Choice(list(SUPPORTED_BACKENDS)),
    default=None,
    help="Override LESSON_FORGE_BACKEND.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    backend: str | None,
) -> None:
    """Claim and process queued jobs."""

    _emit_lines(
        _run(
            CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                backend=backend,
            ),
        ),
    )


@lesson_forge.group()
def feedback() -> None:
    """Cumulative quality feedback commands."""


@feedback.command("show")
@db_path_option
@click.option("--mode", type=click.Choice(_MODES), default=None, help="Only this mode.")
def feedback_show(db_path: Path | None, mode: str | None) -> None:
    """Show rolling scores, trends and recurring issues per mode."""

    _emit_lines(_run(CONTROLLER.show_feedback, FeedbackShowCommand(db_path, mode)))


@feedback.command("clear")
@db_path_option
@click.option("--mode", type=click.Choice(_MODES), required=True)
@click.option("--actor", required=True, help="Who acknowledged the feedback.")
def feedback_clear(db_path: Path | None, mode: str, actor: str) -> None:
    """Archive the feedback of a mode and start over."""

    _emit_lines(_run(CONTROLLER.clear_feedback, FeedbackClearCommand(db_path, mode, actor)))


@feedback.command("history")
@db_path_option
@click.option("--mode", type=click.Choice(_MODES), default=None)
@click.option("--limit", type=click.IntRange(min=1), default=20, show_default=True)
def feedback_history(db_path: Path | None, mode: str | None, limit: int) -> None:
    """List archived feedback snapshots."""

    _emit_lines(
        _run(CONTROLLER.feedback_history, FeedbackHistoryCommand(db_path, mode, limit)),
    )


@lesson_forge.group()
def quality() -> None:
    """Quality gate commands."""


@quality.command("chain")
@click.option("--steps", type=click.IntRange(min=1), default=7, show_default=True)
@click.option(
    "--target",
    type=click.FloatRange(min=0.0, max=1.0, min_open=True),
    default=0.95,
    show_default=True,
    help="Desired end-to-end accuracy.",
)
def quality_chain(steps: int, target: float) -> None:
    """Show how per-step accuracy compounds over a chain of steps."""

    _emit_lines(CONTROLLER.chain_report(chain_length=steps, target=target))


def _run(handler: Callable, command: object) -> list[str]:
    try:
        return handler(command)
    except (JobNotFoundError, JobStateError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    lesson_forge()
