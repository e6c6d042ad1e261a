"""Events yielded by the content pipeline, one dataclass per kind."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class StepEvent:
    """Progress marker: an agent starts or finishes a step."""

    agent: str
    action: str
    message: str = ""


@dataclass(slots=True, frozen=True)
class ChunkEvent:
    """Incremental piece of the primary content."""

    content: str


@dataclass(slots=True, frozen=True)
class ReplaceEvent:
    """Whole primary content after a rewrite."""

    content: str


@dataclass(slots=True, frozen=True)
class CourseDetectedEvent:
    domain: str
    confidence: float
    message: str = ""


@dataclass(slots=True, frozen=True)
class GapAnalysisEvent:
    """Transcript coverage of the requested subtopics."""

    covered: tuple[str, ...]
    not_covered: tuple[str, ...]
    partially_covered: tuple[str, ...]
    transcript_topics: tuple[str, ...] = ()

    @property
    def total(self) -> int:
        return len(self.covered) + len(self.not_covered) + len(self.partially_covered)

    @property
    def covered_count(self) -> int:
        return len(self.covered) + len(self.partially_covered)

    def to_dict(self) -> dict[str, Any]:
        return {
            "covered": list(self.covered),
            "not_covered": list(self.not_covered),
            "partially_covered": list(self.partially_covered),
            "transcript_topics": list(self.transcript_topics),
        }


@dataclass(slots=True, frozen=True)
class FormattedEvent:
    """Structured assignment payload (JSON text)."""

    content: str


@dataclass(slots=True, frozen=True)
class CheckpointEvent:
    """Content snapshot at a resumable step boundary."""

    step_number: int
    step_name: str
    content: str


@dataclass(slots=True, frozen=True)
class UsageEvent:
    """Advisory token and cost counters of one backend call."""

    agent: str
    prompt_tokens: int
    completion_tokens: int
    cost: float
    duration_ms: int


@dataclass(slots=True, frozen=True)
class NoteEvent:
    """Reasoning note for the job event log, no progress change."""

    agent: str
    message: str
    data: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class CompleteEvent:
    cost: float
    content: str | None = None


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    message: str
    agent: str | None = None


@dataclass(slots=True, frozen=True)
class MismatchStopEvent:
    """Transcript unrelated to the requested subtopics."""

    message: str
    cost: float = 0.0


PipelineEvent = (
    StepEvent
    | ChunkEvent
    | ReplaceEvent
    | CourseDetectedEvent
    | GapAnalysisEvent
    | FormattedEvent
    | CheckpointEvent
    | UsageEvent
    | NoteEvent
    | CompleteEvent
    | ErrorEvent
    | MismatchStopEvent
)
