"""Domain models for the generation job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DRAFTING = "drafting"
    CRITIQUING = "critiquing"
    REFINING = "refining"
    FORMATTING = "formatting"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
CLAIMABLE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)
WORKING_STATUSES = (
    JobStatus.PROCESSING,
    JobStatus.DRAFTING,
    JobStatus.CRITIQUING,
    JobStatus.REFINING,
    JobStatus.FORMATTING,
)


class ContentMode(str, Enum):
    """Kind of course material a job produces."""

    PRE_READ = "pre-read"
    LECTURE = "lecture"
    ASSIGNMENT = "assignment"


class JobEventType(str, Enum):
    """Event log entry kinds."""

    STEP = "step"
    CHUNK = "chunk"
    REASONING = "reasoning"
    ERROR = "error"
    CHECKPOINT = "checkpoint"


def total_steps_for_mode(mode: ContentMode) -> int:
    """Number of progress steps shown for a mode."""

    return 7 if mode == ContentMode.ASSIGNMENT else 5


@dataclass(slots=True)
class AssignmentCounts:
    """Requested number of assignment questions per type."""

    mcsc: int = 4
    mcmc: int = 4
    subjective: int = 1

    @property
    def total(self) -> int:
        return self.mcsc + self.mcmc + self.subjective

    def to_dict(self) -> dict[str, int]:
        return {"mcsc": self.mcsc, "mcmc": self.mcmc, "subjective": self.subjective}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AssignmentCounts:
        return cls(
            mcsc=int(payload.get("mcsc", 0)),
            mcmc=int(payload.get("mcmc", 0)),
            subjective=int(payload.get("subjective", 0)),
        )


@dataclass(slots=True)
class JobParams:
    """Input parameters for a generation job."""

    topic: str
    subtopics: str
    mode: ContentMode
    transcript: str | None = None
    assignment_counts: AssignmentCounts | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    owner_id: str
    params: JobParams
    status: JobStatus
    current_step: int
    locked_by: str | None
    final_content: str | None
    assignment_data: dict[str, Any] | None
    gap_analysis: dict[str, Any] | None
    estimated_cost: float
    error_message: str | None
    meta_analysis_completed: bool
    created_at: datetime
    updated_at: datetime

    @property
    def mode(self) -> ContentMode:
        return self.params.mode


@dataclass(slots=True)
class JobEventWrite:
    """Input payload for appending one event."""

    event_type: JobEventType
    agent_name: str
    action: str
    message: str = ""
    data: dict[str, Any] | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    cost: float | None = None


@dataclass(slots=True)
class JobEventView:
    """Event log entry."""

    event_id: int
    job_id: str
    event_type: JobEventType
    agent_name: str
    action: str
    message: str
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class CheckpointView:
    """Saved content snapshot at a step boundary."""

    job_id: str
    step_number: int
    step_name: str
    content_snapshot: str
    created_at: datetime


@dataclass(slots=True)
class JobResult:
    """Terminal outcome written by the driver."""

    success: bool
    content: str = ""
    formatted: str | None = None
    gap_analysis: dict[str, Any] | None = None
    cost: float = 0.0
    error: str | None = None
    cancelled: bool = False
    metrics: JobMetrics | None = None


@dataclass(slots=True)
class AgentMetrics:
    """Advisory per-agent usage counters."""

    calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    duration_ms: int = 0


@dataclass(slots=True)
class JobMetrics:
    """Advisory per-job usage counters."""

    agents: dict[str, AgentMetrics] = field(default_factory=dict)
    total_duration_ms: int = 0

    @property
    def total_cost(self) -> float:
        return sum(item.cost for item in self.agents.values())

    def record(
        self,
        *,
        agent: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost: float,
        duration_ms: int,
    ) -> None:
        entry = self.agents.setdefault(agent, AgentMetrics())
        entry.calls += 1
        entry.prompt_tokens += prompt_tokens
        entry.completion_tokens += completion_tokens
        entry.cost += cost
        entry.duration_ms += duration_ms


@dataclass(slots=True)
class JobProgress:
    """Progress view rebuilt from the event log."""

    job_id: str
    status: JobStatus
    progress: float
    current_agent: str
    current_step: int
    total_steps: int
    error_message: str | None
    events: list[JobEventView]


class JobNotFoundError(LookupError):
    """Raised by operator paths for unknown job ids."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id
