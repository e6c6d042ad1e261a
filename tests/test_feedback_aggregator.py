from __future__ import annotations

from datetime import UTC, datetime

import allure

from lesson_forge.feedback.aggregator import (
    MAX_CLUSTER_EXAMPLES,
    MAX_ISSUE_CLUSTERS,
    MAX_STRENGTHS,
    fold_analysis,
    merge_issues,
    merge_strengths,
    rolling_average,
    round_score,
    trend,
)
from lesson_forge.feedback.models import (
    FeedbackContent,
    IssueCategory,
    IssueSeverity,
    MetaAnalysis,
    QualityIssue,
    QualityScores,
    TrendDirection,
)

pytestmark = [
    allure.epic("Meta Feedback"),
    allure.feature("Aggregation Rules"),
]

_SEEN_AT = datetime(2026, 10, 18, 9, 30, tzinfo=UTC)


def _scores(value: float) -> QualityScores:
    return QualityScores(
        formatting=value,
        pedagogy=value,
        clarity=value,
        structure=value,
        consistency=value,
        factual_accuracy=value,
    )


def _issue(
    agent: str = "Creator",
    category: IssueCategory = IssueCategory.CLARITY,
    severity: IssueSeverity = IssueSeverity.MEDIUM,
    examples: list[str] | None = None,
) -> QualityIssue:
    return QualityIssue(
        category=category,
        severity=severity,
        affected_agent=agent,
        description=f"{agent} {category.value} problem",
        suggested_fix="Tighten the prompt",
        examples=examples or [],
    )


def test_round_score_rounds_half_up() -> None:
    assert round_score(7.25) == 7.3
    assert round_score(7.24) == 7.2


def test_rolling_average_weights_existing_samples() -> None:
    averaged = rolling_average(_scores(8.0), _scores(5.0), 2)

    assert averaged.clarity == 7.0
    assert averaged.factual_accuracy == 7.0


def test_trend_uses_exclusive_threshold() -> None:
    assert trend(7.0, 7.3) == TrendDirection.STABLE
    assert trend(7.0, 7.4) == TrendDirection.IMPROVING
    assert trend(7.0, 6.6) == TrendDirection.DECLINING
    assert trend(7.0, 6.7) == TrendDirection.STABLE


def test_trend_boundary_is_stable_at_one_decimal_precision() -> None:
    for previous, current in ((8.0, 8.3), (8.3, 8.0), (9.0, 9.3), (9.3, 9.0), (5.6, 5.9)):
        assert trend(previous, current) == TrendDirection.STABLE
    assert trend(8.0, 8.4) == TrendDirection.IMPROVING
    assert trend(9.3, 8.9) == TrendDirection.DECLINING


def test_merge_issues_clusters_by_agent_and_category() -> None:
    first = merge_issues(
        [],
        [_issue(severity=IssueSeverity.LOW, examples=["a", "b"])],
        seen_at=_SEEN_AT,
    )
    merged = merge_issues(
        first,
        [
            _issue(severity=IssueSeverity.HIGH, examples=["b", "c"]),
            _issue(agent="Formatter", category=IssueCategory.FORMATTING),
        ],
        seen_at=_SEEN_AT,
    )

    assert [(cluster.agent, cluster.frequency) for cluster in merged] == [
        ("Creator", 2),
        ("Formatter", 1),
    ]
    creator = merged[0]
    assert creator.severity == IssueSeverity.HIGH
    assert creator.examples == ["a", "b", "c"]
    assert creator.last_seen == _SEEN_AT


def test_merge_issues_keeps_highest_severity_when_new_one_is_lower() -> None:
    clusters = merge_issues([], [_issue(severity=IssueSeverity.CRITICAL)], seen_at=_SEEN_AT)
    merged = merge_issues(clusters, [_issue(severity=IssueSeverity.LOW)], seen_at=_SEEN_AT)

    assert merged[0].severity == IssueSeverity.CRITICAL


def test_merge_issues_caps_examples_and_cluster_count() -> None:
    examples = [f"example {index}" for index in range(8)]
    clusters = merge_issues([], [_issue(examples=examples)], seen_at=_SEEN_AT)
    assert len(clusters[0].examples) == MAX_CLUSTER_EXAMPLES

    many = [_issue(agent=f"Agent{index}") for index in range(MAX_ISSUE_CLUSTERS + 5)]
    assert len(merge_issues([], many, seen_at=_SEEN_AT)) == MAX_ISSUE_CLUSTERS


def test_merge_issues_orders_by_frequency_then_severity() -> None:
    merged = merge_issues(
        [],
        [
            _issue(agent="Refiner", severity=IssueSeverity.LOW),
            _issue(agent="Reviewer", severity=IssueSeverity.CRITICAL),
            _issue(agent="Refiner", severity=IssueSeverity.LOW),
            _issue(agent="Sanitizer", severity=IssueSeverity.MEDIUM),
        ],
        seen_at=_SEEN_AT,
    )

    assert [cluster.agent for cluster in merged] == ["Refiner", "Reviewer", "Sanitizer"]


def test_merge_strengths_is_case_insensitive_and_capped() -> None:
    merged = merge_strengths(["Clear examples"], ["clear examples", "Good pacing", " "])
    assert merged == ["Clear examples", "Good pacing"]

    many = merge_strengths([], [f"Strength {index}" for index in range(15)])
    assert len(many) == MAX_STRENGTHS


def test_fold_analysis_first_sample_is_stable() -> None:
    analysis = MetaAnalysis(
        scores=_scores(8.0),
        issues=[_issue()],
        strengths=["Clear examples"],
        overall_assessment="Good start",
    )

    content, count = fold_analysis(None, 0, analysis, seen_at=_SEEN_AT)

    assert count == 1
    assert content.scores == _scores(8.0)
    assert content.previous_scores is None
    assert set(content.trends.values()) == {TrendDirection.STABLE}
    assert len(content.trends) == 6
    assert content.issue_clusters[0].frequency == 1
    assert content.overall_assessment == "Good start"


def test_fold_analysis_rolls_scores_and_trends() -> None:
    current = FeedbackContent(scores=_scores(6.0), strengths=["Clear examples"])
    analysis = MetaAnalysis(
        scores=_scores(9.0),
        strengths=["Good pacing"],
        overall_assessment="Improved",
    )

    content, count = fold_analysis(current, 1, analysis, seen_at=_SEEN_AT)

    assert count == 2
    assert content.scores.pedagogy == 7.5
    assert content.previous_scores == _scores(6.0)
    assert content.trends["pedagogy"] == TrendDirection.IMPROVING
    assert content.strengths == ["Clear examples", "Good pacing"]


def test_feedback_content_round_trips_through_dict() -> None:
    content, _ = fold_analysis(
        None,
        0,
        MetaAnalysis(scores=_scores(7.0), issues=[_issue(examples=["x"])]),
        seen_at=_SEEN_AT,
    )

    restored = FeedbackContent.from_dict(content.to_dict())

    assert restored == content
