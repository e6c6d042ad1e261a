"""Sequential multi-agent content pipeline.

The pipeline only yields events; the worker owns every queue write. Steps:
course detection, gap analysis, drafting, transcript sanitization, the review and
refine loop, and assignment formatting. Drafting, sanitization and review end in
checkpoints so a resumed job skips the work it already has.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Generator, Iterator
from dataclasses import dataclass, field
from typing import Any

from lesson_forge.pipeline import prompts
from lesson_forge.pipeline.backend import (
    GenerationBackend,
    GenerationError,
    GenerationRequest,
)
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
from lesson_forge.pipeline.formatter import format_model_output, render_items, structured_items
from lesson_forge.pipeline.parsing import parse_json_object
from lesson_forge.pipeline.pricing import estimate_cost_usd
from lesson_forge.pipeline.text_diff import (
    NO_CHANGES_MARKER,
    apply_search_replace,
    strip_agent_markers,
)
from lesson_forge.quality.gate import QualityGate, estimate_tokens, quality_gate
from lesson_forge.queue.models import (
    AssignmentCounts,
    CheckpointView,
    ContentMode,
    JobParams,
    JobStatus,
)

logger = logging.getLogger(__name__)

DRAFT_CHECKPOINT = 3
SANITIZE_CHECKPOINT = 4
REVIEW_CHECKPOINT = 5
CHECKPOINT_NAMES = {
    DRAFT_CHECKPOINT: "draft_creation",
    SANITIZE_CHECKPOINT: "sanitization",
    REVIEW_CHECKPOINT: "review_refine",
}

FIRST_REVIEW_THRESHOLD = 9.0
LATER_REVIEW_THRESHOLD = 8.0
MISMATCH_MESSAGE = (
    "The transcript does not cover any of the requested subtopics. "
    "Check that the transcript belongs to this topic."
)

STEP_MAP: dict[str, int] = {
    "CourseDetector": 1,
    "Analyzer": 1,
    "Creator": 2,
    "Sanitizer": 3,
    "Reviewer": 4,
    "Refiner": 4,
    "Formatter": 5,
}
STATUS_MAP: dict[str, JobStatus] = {
    "CourseDetector": JobStatus.DRAFTING,
    "Analyzer": JobStatus.DRAFTING,
    "Creator": JobStatus.DRAFTING,
    "Sanitizer": JobStatus.CRITIQUING,
    "Reviewer": JobStatus.CRITIQUING,
    "Refiner": JobStatus.REFINING,
    "Formatter": JobStatus.FORMATTING,
}

_SUBTOPIC_SPLIT = re.compile(r"[,\n]")


def step_for_agent(agent: str) -> int:
    return STEP_MAP.get(agent, 0)


def status_for_agent(agent: str) -> JobStatus:
    return STATUS_MAP.get(agent, JobStatus.PROCESSING)


def split_subtopics(raw: str) -> list[str]:
    return [item.strip() for item in _SUBTOPIC_SPLIT.split(raw) if item.strip()]


@dataclass(slots=True)
class ReviewVerdict:
    score: float
    needs_polish: bool
    feedback: str
    detailed_feedback: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "needs_polish": self.needs_polish,
            "feedback": self.feedback,
            "detailed_feedback": list(self.detailed_feedback),
        }


def parse_review(text: str) -> ReviewVerdict:
    """Reviewer verdict; an unreadable reply counts as a middling score that needs polish."""

    payload = parse_json_object(text)
    if payload is None:
        logger.warning("Reviewer reply is not JSON, assuming the draft needs polish")
        return ReviewVerdict(score=7.0, needs_polish=True, feedback="Review could not be parsed")
    try:
        score = min(10.0, max(0.0, float(payload.get("score", 7))))
    except (TypeError, ValueError):
        score = 7.0
    needs_polish = payload.get("needsPolish", payload.get("needs_polish"))
    if needs_polish is None:
        needs_polish = score < FIRST_REVIEW_THRESHOLD
    details = payload.get("detailedFeedback", payload.get("detailed_feedback")) or []
    if not isinstance(details, list):
        details = [details]
    return ReviewVerdict(
        score=score,
        needs_polish=bool(needs_polish),
        feedback=str(payload.get("feedback") or ""),
        detailed_feedback=[str(item) for item in details],
    )


def parse_gap_analysis(payload: dict[str, Any]) -> GapAnalysisEvent:
    def _items(*keys: str) -> tuple[str, ...]:
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return tuple(str(item) for item in value)
        return ()

    return GapAnalysisEvent(
        covered=_items("covered"),
        not_covered=_items("notCovered", "not_covered"),
        partially_covered=_items("partiallyCovered", "partially_covered"),
        transcript_topics=_items("transcriptTopics", "transcript_topics"),
    )


@dataclass(slots=True)
class _RunState:
    params: JobParams
    subtopics: list[str]
    content: str = ""
    cost: float = 0.0
    domain: str = "general"
    gap: GapAnalysisEvent | None = None
    agent: str | None = None


class ContentPipeline:
    """Runs the agents for one job and yields :mod:`lesson_forge.pipeline.events`."""

    def __init__(
        self,
        backend: GenerationBackend,
        *,
        model: str = "default",
        max_retries: int = 2,
        review_max_loops: int = 3,
    ) -> None:
        self._backend = backend
        self._model = model
        self._review_max_loops = max(1, review_max_loops)
        self._gates: dict[str, QualityGate] = {
            category: quality_gate(category, max_retries=max_retries)
            for category in ("classifier", "generator", "formatter", "validator")
        }

    def run(
        self,
        params: JobParams,
        *,
        resume: CheckpointView | None = None,
    ) -> Iterator[PipelineEvent]:
        state = _RunState(params=params, subtopics=split_subtopics(params.subtopics))
        try:
            yield from self._run(state, resume)
        except GenerationError as error:
            logger.warning("Pipeline step %s failed: %s", state.agent or "unknown", error)
            yield ErrorEvent(message=str(error), agent=state.agent)

    def _run(self, state: _RunState, resume: CheckpointView | None) -> Iterator[PipelineEvent]:
        resume_step = 0
        if resume is not None and resume.step_number >= DRAFT_CHECKPOINT:
            resume_step = resume.step_number
            state.content = resume.content_snapshot
            yield NoteEvent(
                agent="Pipeline",
                message=f"Resuming after {resume.step_name}",
                data={"step_number": resume.step_number},
            )
            yield ReplaceEvent(content=state.content)

        if resume_step < DRAFT_CHECKPOINT:
            yield from self._detect_course(state)
            stop = yield from self._analyze_gaps(state)
            if stop:
                return
            yield from self._draft(state)
            yield self._checkpoint(DRAFT_CHECKPOINT, state)

        if resume_step < SANITIZE_CHECKPOINT:
            if state.params.transcript:
                yield from self._sanitize(state)
            yield self._checkpoint(SANITIZE_CHECKPOINT, state)

        if resume_step < REVIEW_CHECKPOINT:
            yield from self._review(state)
            yield self._checkpoint(REVIEW_CHECKPOINT, state)

        if state.params.mode == ContentMode.ASSIGNMENT:
            yield from self._format(state)

        yield CompleteEvent(cost=state.cost, content=strip_agent_markers(state.content))

    def _checkpoint(self, step_number: int, state: _RunState) -> CheckpointEvent:
        return CheckpointEvent(
            step_number=step_number,
            step_name=CHECKPOINT_NAMES[step_number],
            content=state.content,
        )

    def _detect_course(self, state: _RunState) -> Iterator[PipelineEvent]:
        yield StepEvent("CourseDetector", "detecting", "Detecting course domain")
        try:
            text = yield from self._call(
                state,
                agent="CourseDetector",
                system=prompts.COURSE_DETECTOR_SYSTEM,
                prompt=prompts.course_detector_prompt(
                    topic=state.params.topic,
                    subtopics=state.subtopics,
                ),
                gate="classifier",
            )
        except GenerationError as error:
            logger.warning("Course detection failed, using general domain: %s", error)
            text = ""
        payload = parse_json_object(text) or {}
        state.domain = str(payload.get("domain") or "general")
        try:
            confidence = min(1.0, max(0.0, float(payload.get("confidence", 0.5))))
        except (TypeError, ValueError):
            confidence = 0.5
        yield CourseDetectedEvent(
            domain=state.domain,
            confidence=confidence,
            message=f"Detected domain: {state.domain} ({confidence:.0%})",
        )

    def _analyze_gaps(self, state: _RunState) -> Generator[PipelineEvent, None, bool]:
        """Yield gap analysis; return True when the transcript is off-topic."""

        if not state.params.transcript or not state.subtopics:
            return False

        yield StepEvent("Analyzer", "analyzing", "Comparing transcript with subtopics")
        try:
            text = yield from self._call(
                state,
                agent="Analyzer",
                system=prompts.ANALYZER_SYSTEM,
                prompt=prompts.analyzer_prompt(
                    topic=state.params.topic,
                    subtopics=state.subtopics,
                    transcript=state.params.transcript,
                ),
                gate="classifier",
            )
        except GenerationError as error:
            logger.warning("Gap analysis failed, continuing without it: %s", error)
            yield NoteEvent("Analyzer", "Analysis failed, continuing without gap analysis")
            return False

        payload = parse_json_object(text)
        if payload is None:
            logger.warning("Gap analysis reply is not JSON, continuing without it")
            yield NoteEvent("Analyzer", "Analysis unreadable, continuing without gap analysis")
            return False

        gap = parse_gap_analysis(payload)
        state.gap = gap
        yield gap
        if gap.total > 0 and gap.covered_count == 0:
            yield MismatchStopEvent(message=MISMATCH_MESSAGE, cost=state.cost)
            return True
        return False

    def _draft(self, state: _RunState) -> Iterator[PipelineEvent]:
        params = state.params
        yield StepEvent("Creator", "drafting", f"Drafting {params.mode.value} content")
        gap_notes = ""
        if state.gap is not None and state.gap.not_covered:
            gap_notes = (
                "These subtopics are missing from the transcript; cover them briefly from "
                "general knowledge: " + ", ".join(state.gap.not_covered)
            )
        chunks = yield from self._call_streaming(
            state,
            agent="Creator",
            system=prompts.CREATOR_SYSTEM,
            prompt=prompts.creator_prompt(
                topic=params.topic,
                subtopics=state.subtopics,
                mode=params.mode,
                domain=state.domain,
                transcript=params.transcript,
                counts=params.assignment_counts or AssignmentCounts(),
                gap_notes=gap_notes,
            ),
        )
        for chunk in chunks:
            yield ChunkEvent(content=chunk)
        state.content = "".join(chunks)

    def _sanitize(self, state: _RunState) -> Iterator[PipelineEvent]:
        yield StepEvent("Sanitizer", "sanitizing", "Checking draft against transcript")
        text = yield from self._call(
            state,
            agent="Sanitizer",
            system=prompts.SANITIZER_SYSTEM,
            prompt=prompts.sanitizer_prompt(
                transcript=state.params.transcript or "",
                content=state.content,
            ),
            gate=None,
        )
        cleaned = text.strip()
        if not cleaned or NO_CHANGES_MARKER in cleaned or cleaned == state.content.strip():
            yield NoteEvent("Sanitizer", "No changes needed")
            return
        state.content = cleaned
        yield ReplaceEvent(content=cleaned)

    def _review(self, state: _RunState) -> Iterator[PipelineEvent]:
        params = state.params
        for loop in range(1, self._review_max_loops + 1):
            yield StepEvent(
                "Reviewer",
                "reviewing",
                f"Review pass {loop}/{self._review_max_loops}",
            )
            text = yield from self._call(
                state,
                agent="Reviewer",
                system=prompts.REVIEWER_SYSTEM,
                prompt=prompts.reviewer_prompt(
                    topic=params.topic,
                    subtopics=state.subtopics,
                    mode=params.mode,
                    content=state.content,
                ),
                gate="validator",
            )
            verdict = parse_review(text)
            threshold = FIRST_REVIEW_THRESHOLD if loop == 1 else LATER_REVIEW_THRESHOLD
            if verdict.score >= threshold or not verdict.needs_polish:
                yield NoteEvent(
                    "Reviewer",
                    f"Draft meets standards (score {verdict.score:g})",
                    verdict.to_dict(),
                )
                return
            if loop >= self._review_max_loops:
                yield NoteEvent(
                    "Reviewer",
                    f"Max review passes reached (score {verdict.score:g}), proceeding",
                    verdict.to_dict(),
                )
                return

            yield StepEvent("Refiner", "refining", f"Refining: {verdict.feedback}")
            patch = yield from self._call(
                state,
                agent="Refiner",
                system=prompts.REFINER_SYSTEM,
                prompt=prompts.refiner_prompt(
                    feedback=verdict.feedback,
                    details=verdict.detailed_feedback,
                    content=state.content,
                ),
                gate=None,
            )
            state.content = apply_search_replace(state.content, patch)
            yield ReplaceEvent(content=state.content)

    def _format(self, state: _RunState) -> Iterator[PipelineEvent]:
        yield StepEvent("Formatter", "formatting", "Structuring assignment items")
        items = structured_items(state.content)
        if items is not None:
            yield FormattedEvent(content=render_items(items))
            return
        text = yield from self._call(
            state,
            agent="Formatter",
            system=prompts.FORMATTER_SYSTEM,
            prompt=prompts.formatter_prompt(content=state.content),
            gate="formatter",
        )
        yield FormattedEvent(content=format_model_output(text))

    def _call(  # noqa: PLR0913
        self,
        state: _RunState,
        *,
        agent: str,
        system: str,
        prompt: str,
        gate: str | None,
    ) -> Generator[PipelineEvent, None, str]:
        """One gated backend call; yields usage and validation notes, returns the text."""

        request = self._request(state, agent=agent, system=system, prompt=prompt)
        usage: list[UsageEvent] = []

        def _execute() -> str:
            started = time.monotonic()
            response = self._backend.generate(request)
            usage.append(
                self._usage(
                    state,
                    request,
                    response.text,
                    started,
                    prompt_tokens=response.prompt_tokens,
                    completion_tokens=response.completion_tokens,
                ),
            )
            return response.text

        text = yield from self._gated(agent, gate, _execute, usage)
        return text

    def _call_streaming(
        self,
        state: _RunState,
        *,
        agent: str,
        system: str,
        prompt: str,
    ) -> Generator[PipelineEvent, None, list[str]]:
        request = self._request(state, agent=agent, system=system, prompt=prompt)
        usage: list[UsageEvent] = []
        accepted: list[str] = []

        def _execute() -> str:
            started = time.monotonic()
            chunks = list(self._backend.stream(request))
            text = "".join(chunks)
            usage.append(self._usage(state, request, text, started))
            accepted[:] = chunks
            return text

        yield from self._gated(agent, "generator", _execute, usage)
        return list(accepted)

    def _gated(
        self,
        agent: str,
        gate: str | None,
        execute: Callable[[], str],
        usage: list[UsageEvent],
    ) -> Generator[PipelineEvent, None, str]:
        if gate is None:
            text = execute()
            yield from usage
            return text

        outcome = self._gates[gate].execute_with_validation(execute, agent)
        yield from usage
        if not outcome.validation.is_valid:
            yield NoteEvent(
                agent,
                f"Output below quality threshold after {outcome.attempts} attempts",
                {
                    "confidence": outcome.validation.confidence,
                    "issues": list(outcome.validation.issues),
                },
            )
        return outcome.result

    def _request(
        self,
        state: _RunState,
        *,
        agent: str,
        system: str,
        prompt: str,
    ) -> GenerationRequest:
        state.agent = agent
        return GenerationRequest(
            agent=agent,
            system=system,
            prompt=prompt,
            model=self._model,
        )

    def _usage(  # noqa: PLR0913
        self,
        state: _RunState,
        request: GenerationRequest,
        text: str,
        started: float,
        *,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
    ) -> UsageEvent:
        prompt_tokens = prompt_tokens if prompt_tokens is not None else estimate_tokens(
            request.compose(),
        )
        completion_tokens = (
            completion_tokens if completion_tokens is not None else estimate_tokens(text)
        )
        cost = estimate_cost_usd(
            model=self._model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        state.cost += cost or 0.0
        return UsageEvent(
            agent=request.agent,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=cost or 0.0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
