"""Quality analysis and cumulative feedback models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any


class IssueCategory(str, Enum):
    FORMATTING = "formatting"
    PEDAGOGY = "pedagogy"
    CLARITY = "clarity"
    STRUCTURE = "structure"
    CONSISTENCY = "consistency"
    FACTUAL_ERRORS = "factual_errors"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    IssueSeverity.LOW: 1,
    IssueSeverity.MEDIUM: 2,
    IssueSeverity.HIGH: 3,
    IssueSeverity.CRITICAL: 4,
}


class TrendDirection(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


@dataclass(slots=True)
class QualityScores:
    """Six quality dimensions on a 0-10 scale."""

    formatting: float = 0.0
    pedagogy: float = 0.0
    clarity: float = 0.0
    structure: float = 0.0
    consistency: float = 0.0
    factual_accuracy: float = 0.0

    @classmethod
    def dimensions(cls) -> tuple[str, ...]:
        return tuple(item.name for item in fields(cls))

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QualityScores:
        return cls(**{name: float(payload.get(name, 0.0)) for name in cls.dimensions()})


@dataclass(slots=True)
class QualityIssue:
    """One problem spotted in a generated document."""

    category: IssueCategory
    severity: IssueSeverity
    affected_agent: str
    description: str
    suggested_fix: str = ""
    examples: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MetaAnalysis:
    """Quality assessment of one completed job."""

    scores: QualityScores
    issues: list[QualityIssue] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    overall_assessment: str = ""


@dataclass(slots=True)
class IssueCluster:
    """Recurring issue merged across jobs by agent and category."""

    agent: str
    category: IssueCategory
    frequency: int
    severity: IssueSeverity
    description: str
    suggested_fix: str
    examples: list[str]
    last_seen: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "category": self.category.value,
            "frequency": self.frequency,
            "severity": self.severity.value,
            "description": self.description,
            "suggested_fix": self.suggested_fix,
            "examples": list(self.examples),
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IssueCluster:
        return cls(
            agent=str(payload["agent"]),
            category=IssueCategory(payload["category"]),
            frequency=int(payload["frequency"]),
            severity=IssueSeverity(payload["severity"]),
            description=str(payload.get("description", "")),
            suggested_fix=str(payload.get("suggested_fix", "")),
            examples=[str(item) for item in payload.get("examples", [])],
            last_seen=datetime.fromisoformat(payload["last_seen"]),
        )


@dataclass(slots=True)
class FeedbackContent:
    """Rolling per-mode aggregate stored as JSON."""

    scores: QualityScores = field(default_factory=QualityScores)
    previous_scores: QualityScores | None = None
    trends: dict[str, TrendDirection] = field(default_factory=dict)
    issue_clusters: list[IssueCluster] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    overall_assessment: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "scores": self.scores.to_dict(),
            "previous_scores": (
                self.previous_scores.to_dict() if self.previous_scores is not None else None
            ),
            "trends": {name: trend.value for name, trend in self.trends.items()},
            "issue_clusters": [cluster.to_dict() for cluster in self.issue_clusters],
            "strengths": list(self.strengths),
            "overall_assessment": self.overall_assessment,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FeedbackContent:
        previous = payload.get("previous_scores")
        return cls(
            scores=QualityScores.from_dict(payload.get("scores") or {}),
            previous_scores=QualityScores.from_dict(previous) if previous else None,
            trends={
                name: TrendDirection(value)
                for name, value in (payload.get("trends") or {}).items()
            },
            issue_clusters=[
                IssueCluster.from_dict(item) for item in payload.get("issue_clusters") or []
            ],
            strengths=[str(item) for item in payload.get("strengths") or []],
            overall_assessment=str(payload.get("overall_assessment", "")),
        )


@dataclass(slots=True)
class CumulativeFeedbackView:
    """Live feedback row for one mode."""

    mode: str
    content: FeedbackContent
    generation_count: int
    last_updated: datetime
    created_at: datetime


@dataclass(slots=True)
class FeedbackHistoryView:
    """Archived feedback snapshot written by an acknowledgement."""

    history_id: int
    mode: str
    content: FeedbackContent
    generation_count: int
    acknowledged_by: str
    acknowledged_at: datetime
