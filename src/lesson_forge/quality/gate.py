"""Output quality gate with bounded blind retries for pipeline steps."""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_TOKEN_ESTIMATE = 20
FILLER_PHRASE_TOLERANCE = 2

_REFUSAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"I don't have access to",
        r"I cannot provide",
        r"As an AI",
        r"I'm not able to",
        r"I don't have the ability",
        r"I cannot access",
        r"I'm unable to",
        r"my training data",
        r"my knowledge cutoff",
    )
)
_FILLER_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"It's important to note that",
        r"It's worth mentioning",
        r"Let me explain",
        r"I'd be happy to",
        r"Certainly!",
        r"Absolutely!",
        r"Great question",
    )
)
_JSON_SPAN = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")


@dataclass(slots=True, frozen=True)
class QualityGateConfig:
    """Thresholds for one step category."""

    min_confidence: float = 0.95
    max_retries: int = 2
    validate_json: bool = False
    check_refusals: bool = True
    min_output_length: int = 50


@dataclass(slots=True)
class ValidationResult:
    """Soft validation verdict; never raised."""

    is_valid: bool
    confidence: float
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateOutcome(Generic[T]):
    """Last executor result with its validation and the number of invocations."""

    result: T
    validation: ValidationResult
    attempts: int


def estimate_tokens(text: str) -> int:
    """Rough token count: four characters per token."""

    return math.ceil(len(text) / 4)


class QualityGate:
    """Validates step output; confidence starts at 1.0 and is only multiplied down."""

    def __init__(self, config: QualityGateConfig | None = None) -> None:
        self.config = config or QualityGateConfig()

    def validate(
        self,
        output: str,
        agent_name: str,
        *,
        validate_json: bool | None = None,
    ) -> ValidationResult:
        expect_json = self.config.validate_json if validate_json is None else validate_json
        result = ValidationResult(is_valid=True, confidence=1.0)

        if len(output.strip()) < self.config.min_output_length:
            result.is_valid = False
            result.confidence = 0.0
            result.issues.append(
                f"Output too short ({len(output)} chars, min: {self.config.min_output_length})",
            )
            return result

        if expect_json:
            match = _JSON_SPAN.search(output)
            if match is None:
                result.issues.append("No JSON structure found in output")
                result.confidence *= 0.6
            else:
                try:
                    json.loads(match.group(0))
                except json.JSONDecodeError:
                    result.issues.append("Invalid JSON structure")
                    result.confidence *= 0.5

        if self.config.check_refusals:
            for pattern in _REFUSAL_PATTERNS:
                if pattern.search(output):
                    result.issues.append(f'Refusal marker: "{pattern.pattern}"')
                    result.confidence *= 0.7
                    result.suggestions.append("Retry with more specific context or constraints")

        filler_count = sum(1 for pattern in _FILLER_PATTERNS if pattern.search(output))
        if filler_count > FILLER_PHRASE_TOLERANCE:
            result.issues.append(f"Multiple filler phrases detected ({filler_count})")
            result.confidence *= 0.9
            result.suggestions.append("Consider a refinement pass to improve natural tone")

        tokens = estimate_tokens(output)
        if tokens < MIN_TOKEN_ESTIMATE:
            result.issues.append(f"Suspiciously short output ({tokens} tokens)")
            result.confidence *= 0.7

        result.is_valid = result.confidence >= self.config.min_confidence
        if not result.is_valid:
            logger.debug(
                "%s output below threshold: confidence=%.3f issues=%s",
                agent_name,
                result.confidence,
                result.issues,
            )
        return result

    def execute_with_validation(
        self,
        executor: Callable[[], T],
        agent_name: str,
        *,
        max_retries: int | None = None,
        validate_json: bool | None = None,
    ) -> GateOutcome[T]:
        """Run ``executor`` until its output validates, at most ``max_retries + 1`` times.

        Each retry is an independent resample: the failing issues are not fed back
        into the next call. After exhaustion the latest result is returned with its
        failing validation, so callers decide what a soft failure means.
        """

        retries = self.config.max_retries if max_retries is None else max_retries
        total_attempts = max(0, retries) + 1
        result: T | None = None
        validation = ValidationResult(is_valid=False, confidence=0.0)
        for attempt in range(1, total_attempts + 1):
            result = executor()
            output = result if isinstance(result, str) else json.dumps(result, default=str)
            validation = self.validate(output, agent_name, validate_json=validate_json)
            if validation.is_valid:
                if attempt > 1:
                    logger.info("%s passed validation on attempt %d", agent_name, attempt)
                return GateOutcome(result=result, validation=validation, attempts=attempt)
            if attempt < total_attempts:
                logger.warning(
                    "%s validation failed (attempt %d/%d): %s",
                    agent_name,
                    attempt,
                    total_attempts,
                    ", ".join(validation.issues),
                )

        logger.error(
            "%s failed validation after %d attempts: %s",
            agent_name,
            total_attempts,
            ", ".join(validation.issues),
        )
        return GateOutcome(
            result=result,  # type: ignore[arg-type]
            validation=validation,
            attempts=total_attempts,
        )


QUALITY_GATES: dict[str, QualityGateConfig] = {
    "classifier": QualityGateConfig(validate_json=True, min_confidence=0.90, min_output_length=20),
    "generator": QualityGateConfig(
        validate_json=False,
        min_confidence=0.95,
        min_output_length=200,
        check_refusals=True,
    ),
    "formatter": QualityGateConfig(validate_json=True, min_confidence=0.98, min_output_length=50),
    "validator": QualityGateConfig(validate_json=True, min_confidence=0.90, min_output_length=30),
}


def quality_gate(category: str, *, max_retries: int | None = None) -> QualityGate:
    """Gate built from a preset category, optionally overriding the retry budget."""

    try:
        config = QUALITY_GATES[category]
    except KeyError as error:
        raise ValueError(f"Unknown quality gate category: {category!r}") from error
    if max_retries is not None:
        config = replace(config, max_retries=max_retries)
    return QualityGate(config)


def chain_accuracy(per_step_accuracy: float, chain_length: int) -> float:
    """End-to-end accuracy of ``chain_length`` sequential steps."""

    return per_step_accuracy**chain_length


def required_step_accuracy(target_accuracy: float, chain_length: int) -> float:
    """Per-step accuracy needed to reach ``target_accuracy`` end to end."""

    return target_accuracy ** (1 / chain_length)


def chain_accuracy_report(chain_length: int = 7, *, target: float = 0.95) -> list[str]:
    """Report lines: end-to-end accuracy for common step accuracies, then what ``target`` needs."""

    lines = [f"Chain accuracy for {chain_length} sequential steps:"]
    for accuracy in (0.85, 0.90, 0.95, 0.99):
        chained = chain_accuracy(accuracy, chain_length)
        marker = "ok" if chained >= 0.9 else "warn" if chained >= 0.7 else "low"
        lines.append(
            f"  [{marker}] {accuracy * 100:.0f}% per step -> {chained * 100:.1f}% end to end",
        )
    required = required_step_accuracy(target, chain_length)
    lines.append(
        f"Target {target * 100:.0f}% end to end requires {required * 100:.1f}% per step.",
    )
    return lines
