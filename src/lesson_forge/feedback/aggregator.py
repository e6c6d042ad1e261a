"""Pure merge rules folding one job's analysis into the per-mode aggregate."""

from __future__ import annotations

import math
from datetime import datetime

from lesson_forge.feedback.models import (
    FeedbackContent,
    IssueCluster,
    IssueSeverity,
    MetaAnalysis,
    QualityIssue,
    QualityScores,
    TrendDirection,
)

TREND_THRESHOLD = 0.3
MAX_ISSUE_CLUSTERS = 20
MAX_CLUSTER_EXAMPLES = 5
MAX_STRENGTHS = 10


def round_score(value: float) -> float:
    """Round half up to one decimal."""

    return math.floor(value * 10 + 0.5) / 10


def rolling_average(current: QualityScores, sample: QualityScores, count: int) -> QualityScores:
    """Weighted update where ``count`` is the number of samples already folded in."""

    weight = count / (count + 1)
    sample_weight = 1 / (count + 1)
    return QualityScores(
        **{
            name: round_score(
                getattr(current, name) * weight + getattr(sample, name) * sample_weight,
            )
            for name in QualityScores.dimensions()
        },
    )


def trend(previous: float, current: float) -> TrendDirection:
    # Scores carry one decimal, so a delta of exactly 0.3 stays stable.
    delta = round(current - previous, 1)
    if delta > TREND_THRESHOLD:
        return TrendDirection.IMPROVING
    if delta < -TREND_THRESHOLD:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def score_trends(previous: QualityScores, current: QualityScores) -> dict[str, TrendDirection]:
    return {
        name: trend(getattr(previous, name), getattr(current, name))
        for name in QualityScores.dimensions()
    }


def stable_trends() -> dict[str, TrendDirection]:
    return dict.fromkeys(QualityScores.dimensions(), TrendDirection.STABLE)


def higher_severity(left: IssueSeverity, right: IssueSeverity) -> IssueSeverity:
    return left if left.rank >= right.rank else right


def merge_issues(
    clusters: list[IssueCluster],
    issues: list[QualityIssue],
    *,
    seen_at: datetime,
) -> list[IssueCluster]:
    """Cluster issues by (agent, category), keeping the most frequent and severe."""

    by_key: dict[tuple[str, str], IssueCluster] = {
        (cluster.agent, cluster.category.value): cluster for cluster in clusters
    }
    for issue in issues:
        key = (issue.affected_agent, issue.category.value)
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = IssueCluster(
                agent=issue.affected_agent,
                category=issue.category,
                frequency=1,
                severity=issue.severity,
                description=issue.description,
                suggested_fix=issue.suggested_fix,
                examples=_dedupe(issue.examples)[:MAX_CLUSTER_EXAMPLES],
                last_seen=seen_at,
            )
            continue
        by_key[key] = IssueCluster(
            agent=existing.agent,
            category=existing.category,
            frequency=existing.frequency + 1,
            severity=higher_severity(existing.severity, issue.severity),
            description=issue.description,
            suggested_fix=issue.suggested_fix,
            examples=_dedupe([*existing.examples, *issue.examples])[:MAX_CLUSTER_EXAMPLES],
            last_seen=seen_at,
        )

    ordered = sorted(
        by_key.values(),
        key=lambda cluster: (cluster.frequency, cluster.severity.rank),
        reverse=True,
    )
    return ordered[:MAX_ISSUE_CLUSTERS]


def merge_strengths(existing: list[str], new: list[str]) -> list[str]:
    """Case-insensitive union; the first spelling seen wins."""

    merged: list[str] = []
    seen: set[str] = set()
    for strength in [*existing, *new]:
        key = strength.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(strength)
    return merged[:MAX_STRENGTHS]


def fold_analysis(
    current: FeedbackContent | None,
    count: int,
    analysis: MetaAnalysis,
    *,
    seen_at: datetime,
) -> tuple[FeedbackContent, int]:
    """Return the merged content and the new generation count."""

    if current is None:
        return (
            FeedbackContent(
                scores=QualityScores.from_dict(analysis.scores.to_dict()),
                previous_scores=None,
                trends=stable_trends(),
                issue_clusters=merge_issues([], analysis.issues, seen_at=seen_at),
                strengths=merge_strengths([], analysis.strengths),
                overall_assessment=analysis.overall_assessment,
            ),
            1,
        )

    scores = rolling_average(current.scores, analysis.scores, count)
    return (
        FeedbackContent(
            scores=scores,
            previous_scores=current.scores,
            trends=score_trends(current.scores, scores),
            issue_clusters=merge_issues(current.issue_clusters, analysis.issues, seen_at=seen_at),
            strengths=merge_strengths(current.strengths, analysis.strengths),
            overall_assessment=analysis.overall_assessment,
        ),
        count + 1,
    )


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))
