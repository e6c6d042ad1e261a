"""Post-completion quality analysis feeding cumulative per-mode feedback."""

from __future__ import annotations

import logging
from typing import Any

from lesson_forge.feedback.models import (
    IssueCategory,
    IssueSeverity,
    MetaAnalysis,
    QualityIssue,
    QualityScores,
)
from lesson_forge.pipeline import prompts
from lesson_forge.pipeline.backend import GenerationBackend, GenerationRequest
from lesson_forge.pipeline.parsing import parse_json_object
from lesson_forge.quality.gate import quality_gate
from lesson_forge.queue.models import ContentMode

logger = logging.getLogger(__name__)

AGENT_NAME = "MetaQuality"
_SCORE_KEYS = {
    "formatting": ("formatting",),
    "pedagogy": ("pedagogy",),
    "clarity": ("clarity",),
    "structure": ("structure",),
    "consistency": ("consistency",),
    "factual_accuracy": ("factual_accuracy", "factualAccuracy"),
}


class MetaAnalysisError(ValueError):
    """Analysis reply could not be turned into scores."""


class MetaQualityAnalyzer:
    """Scores finished material on six dimensions and lists issues per agent.

    The reply goes through the validator gate; a reply that still is not a JSON
    object with scores raises :class:`MetaAnalysisError`.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        *,
        model: str = "default",
        max_retries: int = 2,
    ) -> None:
        self._backend = backend
        self._model = model
        self._gate = quality_gate("validator", max_retries=max_retries)

    def analyze(self, *, mode: ContentMode, topic: str, content: str) -> MetaAnalysis:
        request = GenerationRequest(
            agent=AGENT_NAME,
            system=prompts.META_QUALITY_SYSTEM,
            prompt=prompts.meta_quality_prompt(mode=mode, topic=topic, content=content),
            model=self._model,
        )
        outcome = self._gate.execute_with_validation(
            lambda: self._backend.generate(request).text,
            AGENT_NAME,
        )
        payload = parse_json_object(outcome.result)
        if payload is None:
            raise MetaAnalysisError("Meta quality reply is not a JSON object")
        return parse_meta_analysis(payload)


def parse_meta_analysis(payload: dict[str, Any]) -> MetaAnalysis:
    raw_scores = payload.get("scores")
    if not isinstance(raw_scores, dict):
        raise MetaAnalysisError("Meta quality reply has no scores")

    scores: dict[str, float] = {}
    for name, keys in _SCORE_KEYS.items():
        value = next((raw_scores[key] for key in keys if key in raw_scores), 0.0)
        try:
            scores[name] = min(10.0, max(0.0, float(value)))
        except (TypeError, ValueError) as error:
            raise MetaAnalysisError(f"Invalid score for {name}: {value!r}") from error

    return MetaAnalysis(
        scores=QualityScores(**scores),
        issues=[
            issue
            for issue in (_parse_issue(item) for item in payload.get("issues") or [])
            if issue is not None
        ],
        strengths=[str(item) for item in payload.get("strengths") or [] if str(item).strip()],
        overall_assessment=str(
            payload.get("overallAssessment") or payload.get("overall_assessment") or "",
        ),
    )


def _parse_issue(item: Any) -> QualityIssue | None:
    if not isinstance(item, dict):
        return None
    try:
        category = IssueCategory(str(item.get("category", "")).strip().lower())
    except ValueError:
        logger.debug("Skipping issue with unknown category: %r", item.get("category"))
        return None
    try:
        severity = IssueSeverity(str(item.get("severity", "medium")).strip().lower())
    except ValueError:
        severity = IssueSeverity.MEDIUM
    agent = str(item.get("affectedAgent") or item.get("affected_agent") or "").strip()
    description = str(item.get("description") or "").strip()
    if not agent or not description:
        return None
    return QualityIssue(
        category=category,
        severity=severity,
        affected_agent=agent,
        description=description,
        suggested_fix=str(item.get("suggestedFix") or item.get("suggested_fix") or ""),
        examples=[str(example) for example in item.get("examples") or []],
    )
