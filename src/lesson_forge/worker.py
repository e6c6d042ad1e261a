"""Queue worker that drives content pipelines for claimed jobs."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from lesson_forge.feedback.repository import MetaFeedbackRepository
from lesson_forge.pipeline.events import (
    CheckpointEvent,
    ChunkEvent,
    CompleteEvent,
    CourseDetectedEvent,
    ErrorEvent,
    FormattedEvent,
    GapAnalysisEvent,
    MismatchStopEvent,
    NoteEvent,
    PipelineEvent,
    ReplaceEvent,
    StepEvent,
    UsageEvent,
)
from lesson_forge.pipeline.formatter import count_items
from lesson_forge.pipeline.meta_quality import MetaQualityAnalyzer
from lesson_forge.pipeline.orchestrator import ContentPipeline, status_for_agent, step_for_agent
from lesson_forge.queue.cancellation import CancellationRegistry, CancellationToken
from lesson_forge.queue.models import (
    JobEventType,
    JobEventWrite,
    JobMetrics,
    JobResult,
    JobView,
)
from lesson_forge.queue.repository import CANCELLED_MESSAGE, DEFAULT_FAILURE_MESSAGE, JobQueue

logger = logging.getLogger(__name__)

_IN_MEMORY_EVENTS = (ChunkEvent, ReplaceEvent, UsageEvent)


class GenerationFailed(RuntimeError):
    """Pipeline reported a hard failure for the current job."""

    def __init__(self, message: str, *, agent: str | None = None) -> None:
        super().__init__(message or DEFAULT_FAILURE_MESSAGE)
        self.agent = agent


class _JobCancelled(Exception):
    pass


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class _DriverState:
    content: str = ""
    formatted: str | None = None
    gap_analysis: dict[str, Any] | None = None
    cost: float = 0.0
    agent: str | None = None
    metrics: JobMetrics = field(default_factory=JobMetrics)


class GenerationWorker:
    """Claims queued jobs and turns pipeline events into queue writes."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        pipeline: ContentPipeline,
        worker_id: str,
        feedback: MetaFeedbackRepository | None = None,
        meta_analyzer: MetaQualityAnalyzer | None = None,
        registry: CancellationRegistry | None = None,
        poll_interval_seconds: float = 2.0,
        stale_job_seconds: int = 120,
        stale_sweep_limit: int = 10,
        heartbeat_seconds: float = 30.0,
    ) -> None:
        self.queue = queue
        self.pipeline = pipeline
        self.worker_id = worker_id
        self.feedback = feedback
        self.meta_analyzer = meta_analyzer
        self.registry = registry or CancellationRegistry()
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_job_seconds = stale_job_seconds
        self.stale_sweep_limit = stale_sweep_limit
        self.heartbeat_seconds = heartbeat_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = len(self._recover_stale_jobs())
        job = None
        if not self._stop_requested:
            job = self.queue.claim_next_job(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        result = self.process_job(job)
        if result.success:
            summary.succeeded = 1
        elif result.cancelled:
            summary.cancelled = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays idle, ``max_jobs`` were processed or a stop signal.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job: mark it failed in the queue, then signal the local token.

        Returns True when this worker was running the job.
        """

        self.queue.cancel_job(job_id)
        return self.registry.cancel(job_id)

    def process_job(self, job: JobView) -> JobResult:
        """Drive one claimed job to a terminal state; never raises for job-level errors."""

        job_id = job.job_id
        token = self.registry.register(job_id, poll=lambda: self.queue.is_terminal(job_id))
        state = _DriverState(gap_analysis=job.gap_analysis)
        started = time.monotonic()
        logger.info("Processing job %s (%s, %s)", job_id, job.mode.value, job.params.topic)
        try:
            with self._heartbeat(job_id):
                result = self._drive(job, token, state)
        except _JobCancelled:
            return self._cancelled(job_id, state)
        except GenerationFailed as error:
            logger.warning("Job %s failed at %s: %s", job_id, error.agent or "unknown", error)
            return self._fail(job_id, state, str(error), agent=error.agent)
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s crashed", job_id)
            return self._fail(job_id, state, f"Unexpected error: {error}", agent=state.agent)
        finally:
            self.registry.unregister(job_id)
            state.metrics.total_duration_ms = int((time.monotonic() - started) * 1000)

        self._log_metrics(job_id, state.metrics)
        if result.success:
            self._analyze_quality(job, result)
        return result

    def _drive(self, job: JobView, token: CancellationToken, state: _DriverState) -> JobResult:
        resume = self.queue.latest_checkpoint(job.job_id)
        events = self.pipeline.run(job.params, resume=resume)
        with closing(events):
            for event in events:
                # In-memory events still land after a cancel request so partial content survives.
                if token.cancelled and not isinstance(event, _IN_MEMORY_EVENTS):
                    raise _JobCancelled
                if isinstance(event, CompleteEvent):
                    return self._complete(job.job_id, state, event)
                self._apply(job.job_id, token, state, event)
        raise GenerationFailed("Pipeline ended without a result", agent=state.agent)

    def _apply(  # noqa: C901
        self,
        job_id: str,
        token: CancellationToken,
        state: _DriverState,
        event: PipelineEvent,
    ) -> None:
        if isinstance(event, StepEvent):
            state.agent = event.agent
            if not self.queue.update_step(
                job_id,
                step_for_agent(event.agent),
                status_for_agent(event.agent),
                worker_id=self.worker_id,
            ):
                token.cancel()
                raise _JobCancelled
            self._log(job_id, JobEventType.STEP, event.agent, event.action, event.message)
        elif isinstance(event, ChunkEvent):
            state.content += event.content
        elif isinstance(event, ReplaceEvent):
            state.content = event.content
        elif isinstance(event, GapAnalysisEvent):
            state.gap_analysis = event.to_dict()
            self._log(
                job_id,
                JobEventType.REASONING,
                "Analyzer",
                "gap_analysis",
                f"{event.covered_count}/{event.total} subtopics covered by the transcript",
                data=event.to_dict(),
            )
        elif isinstance(event, CourseDetectedEvent):
            self._log(
                job_id,
                JobEventType.REASONING,
                "CourseDetector",
                "course_detected",
                event.message,
                data={"domain": event.domain, "confidence": event.confidence},
            )
        elif isinstance(event, FormattedEvent):
            state.formatted = event.content
            self._log(
                job_id,
                JobEventType.REASONING,
                "Formatter",
                "formatted",
                f"Formatted {count_items(event.content)} assignment items",
            )
        elif isinstance(event, CheckpointEvent):
            saved = self.queue.save_checkpoint(
                job_id,
                step_number=event.step_number,
                step_name=event.step_name,
                content=event.content,
                worker_id=self.worker_id,
            )
            if saved is None:
                token.cancel()
                raise _JobCancelled
        elif isinstance(event, UsageEvent):
            state.cost += event.cost
            state.metrics.record(
                agent=event.agent,
                prompt_tokens=event.prompt_tokens,
                completion_tokens=event.completion_tokens,
                cost=event.cost,
                duration_ms=event.duration_ms,
            )
        elif isinstance(event, NoteEvent):
            self._log(
                job_id,
                JobEventType.REASONING,
                event.agent,
                "note",
                event.message,
                data=event.data,
            )
        elif isinstance(event, MismatchStopEvent):
            state.cost = max(state.cost, event.cost)
            raise GenerationFailed(event.message, agent="Analyzer")
        elif isinstance(event, ErrorEvent):
            raise GenerationFailed(event.message, agent=event.agent or state.agent)

    def _complete(self, job_id: str, state: _DriverState, event: CompleteEvent) -> JobResult:
        if event.content is not None:
            state.content = event.content
        state.cost = max(state.cost, event.cost)
        result = self._result(state, success=True)
        if not self.queue.save_result(job_id, result, worker_id=self.worker_id):
            # Cancelled or requeued between the last event and the terminal write.
            raise _JobCancelled
        logger.info("Job %s completed (cost=%.4f)", job_id, state.cost)
        return result

    def _fail(
        self,
        job_id: str,
        state: _DriverState,
        message: str,
        *,
        agent: str | None,
    ) -> JobResult:
        result = self._result(state, success=False, error=message or DEFAULT_FAILURE_MESSAGE)
        if not self.queue.save_result(job_id, result, worker_id=self.worker_id):
            return self._cancelled(job_id, state)
        self._log(job_id, JobEventType.ERROR, agent or "Pipeline", "failed", result.error or "")
        return result

    def _cancelled(self, job_id: str, state: _DriverState) -> JobResult:
        result = self._result(state, success=False, error=CANCELLED_MESSAGE, cancelled=True)
        if self.queue.save_result(job_id, result):
            logger.info("Job %s cancelled", job_id)
        else:
            logger.warning(
                "Job %s is no longer owned by %s, leaving it as is",
                job_id,
                self.worker_id,
            )
        return result

    def _result(
        self,
        state: _DriverState,
        *,
        success: bool,
        error: str | None = None,
        cancelled: bool = False,
    ) -> JobResult:
        return JobResult(
            success=success,
            content=state.content,
            formatted=state.formatted,
            gap_analysis=state.gap_analysis,
            cost=state.cost,
            error=error,
            cancelled=cancelled,
            metrics=state.metrics,
        )

    def _log(  # noqa: PLR0913
        self,
        job_id: str,
        event_type: JobEventType,
        agent: str,
        action: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.queue.log_event(
            job_id,
            JobEventWrite(
                event_type=event_type,
                agent_name=agent,
                action=action,
                message=message,
                data=data,
            ),
        )

    def _log_metrics(self, job_id: str, metrics: JobMetrics) -> None:
        if not metrics.agents:
            return
        prompt_tokens = sum(item.prompt_tokens for item in metrics.agents.values())
        completion_tokens = sum(item.completion_tokens for item in metrics.agents.values())
        self.queue.log_event(
            job_id,
            JobEventWrite(
                event_type=JobEventType.REASONING,
                agent_name="Pipeline",
                action="metrics",
                message=f"{len(metrics.agents)} agents in {metrics.total_duration_ms} ms",
                data={
                    "total_duration_ms": metrics.total_duration_ms,
                    "agents": {
                        name: {
                            "calls": item.calls,
                            "prompt_tokens": item.prompt_tokens,
                            "completion_tokens": item.completion_tokens,
                            "cost": item.cost,
                            "duration_ms": item.duration_ms,
                        }
                        for name, item in metrics.agents.items()
                    },
                },
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                cost=metrics.total_cost,
            ),
        )

    def _analyze_quality(self, job: JobView, result: JobResult) -> None:
        if self.meta_analyzer is None or self.feedback is None:
            return
        content = result.formatted or result.content
        try:
            analysis = self.meta_analyzer.analyze(
                mode=job.mode,
                topic=job.params.topic,
                content=content,
            )
            self.feedback.aggregate_feedback(job.mode.value, analysis)
        except Exception as error:  # noqa: BLE001
            logger.warning("Meta quality analysis failed for job %s: %s", job.job_id, error)
            return
        self.feedback.mark_job_analyzed(job.job_id)

    def _recover_stale_jobs(self) -> list[str]:
        if self.stale_job_seconds <= 0:
            return []
        recovered = self.queue.recover_stale_jobs(
            stale_after=timedelta(seconds=self.stale_job_seconds),
            limit=self.stale_sweep_limit,
        )
        if recovered:
            logger.warning("Requeued %d stale jobs: %s", len(recovered), ", ".join(recovered))
        return recovered

    @contextmanager
    def _heartbeat(self, job_id: str) -> Iterator[None]:
        """Refresh the job's ``updated_at`` during long backend calls.

        Keeps the stale sweep of other workers away from a job that is still running.
        """

        if self.heartbeat_seconds <= 0:
            yield
            return

        stop = threading.Event()

        def _beat() -> None:
            while not stop.wait(self.heartbeat_seconds):
                try:
                    owned = self.queue.touch_job(job_id, worker_id=self.worker_id)
                except SQLAlchemyError as error:
                    logger.warning("Heartbeat for job %s failed: %s", job_id, error)
                    continue
                if not owned:
                    return

        thread = threading.Thread(target=_beat, daemon=True, name=f"heartbeat-{job_id[:8]}")
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join(timeout=5)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def request_stop(self) -> None:
        """Finish the current job, then leave the loop."""

        self._stop_requested = True

    def _request_stop(self, *, signal_name: str) -> None:
        logger.warning("Received %s, stopping after the current job", signal_name)
        self.request_stop()
