from __future__ import annotations

import json

import allure
import pytest

from lesson_forge.quality.gate import (
    QualityGate,
    QualityGateConfig,
    chain_accuracy,
    chain_accuracy_report,
    estimate_tokens,
    quality_gate,
    required_step_accuracy,
)

pytestmark = [
    allure.epic("Quality Gate"),
    allure.feature("Validation & Retries"),
]

_GOOD_JSON = json.dumps(
    {
        "domain": "programming",
        "confidence": 0.9,
        "reasoning": "Subtopics describe language features and idioms.",
    },
)
_GOOD_TEXT = (
    "Generators produce values lazily. Each call to next() resumes the function body "
    "until the following yield statement, which keeps memory use flat for large inputs."
)


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_validate_accepts_clean_json() -> None:
    result = quality_gate("classifier").validate(_GOOD_JSON, "CourseDetector")

    assert result.is_valid is True
    assert result.confidence == 1.0
    assert result.issues == []


def test_validate_rejects_too_short_output() -> None:
    result = quality_gate("generator").validate("tiny", "Creator")

    assert result.is_valid is False
    assert result.confidence == 0.0
    assert "too short" in result.issues[0]


def test_validate_penalizes_missing_json() -> None:
    result = quality_gate("validator").validate(_GOOD_TEXT, "Reviewer")

    assert result.confidence == pytest.approx(0.6)
    assert result.is_valid is False
    assert "No JSON structure found in output" in result.issues


def test_validate_penalizes_invalid_json() -> None:
    broken = '{"score": 9, "feedback": "Readable and accurate, one brace is left open" '
    broken = broken * 2 + "}"
    result = quality_gate("validator").validate(broken, "Reviewer")

    assert result.confidence == pytest.approx(0.5)
    assert "Invalid JSON structure" in result.issues


def test_validate_penalizes_refusals() -> None:
    gate = QualityGate(QualityGateConfig(min_confidence=0.9, min_output_length=10))
    text = "As an AI I cannot provide lecture notes, but " + _GOOD_TEXT

    result = gate.validate(text, "Creator")

    assert result.confidence == pytest.approx(0.7 * 0.7)
    assert result.is_valid is False
    assert result.suggestions


def test_validate_tolerates_two_fillers_but_not_three() -> None:
    gate = QualityGate(QualityGateConfig(min_confidence=0.5, min_output_length=10))
    two = "Great question! Let me explain. " + _GOOD_TEXT
    three = "Great question! Let me explain. Certainly! " + _GOOD_TEXT

    assert gate.validate(two, "Creator").confidence == 1.0
    assert gate.validate(three, "Creator").confidence == pytest.approx(0.9)


def test_validate_penalizes_suspiciously_short_output() -> None:
    gate = QualityGate(QualityGateConfig(min_confidence=0.9, min_output_length=10))

    result = gate.validate("A short but non-empty answer.", "Creator")

    assert result.confidence == pytest.approx(0.7)
    assert result.is_valid is False


def test_execute_with_validation_returns_first_valid_result() -> None:
    replies = iter(["nope", _GOOD_JSON, "never used"])

    outcome = quality_gate("classifier").execute_with_validation(
        lambda: next(replies),
        "CourseDetector",
    )

    assert outcome.result == _GOOD_JSON
    assert outcome.attempts == 2
    assert outcome.validation.is_valid is True


def test_execute_with_validation_returns_last_result_after_exhaustion() -> None:
    calls: list[int] = []

    def _executor() -> str:
        calls.append(1)
        return f"bad reply {len(calls)}"

    outcome = quality_gate("classifier", max_retries=1).execute_with_validation(
        _executor,
        "CourseDetector",
    )

    assert len(calls) == 2
    assert outcome.attempts == 2
    assert outcome.result == "bad reply 2"
    assert outcome.validation.is_valid is False


def test_execute_with_validation_honours_call_overrides() -> None:
    calls: list[int] = []

    def _executor() -> str:
        calls.append(1)
        return _GOOD_TEXT

    gate = quality_gate("validator")
    outcome = gate.execute_with_validation(_executor, "Reviewer", max_retries=0)
    assert outcome.attempts == 1
    assert outcome.validation.is_valid is False

    relaxed = gate.execute_with_validation(_executor, "Reviewer", validate_json=False)
    assert relaxed.validation.is_valid is True
    assert len(calls) == 2


def test_execute_with_validation_serializes_non_string_results() -> None:
    payload = {
        "items": [{"questionType": "mcsc", "contentBody": "Pick the correct statement"}],
        "count": 1,
    }

    outcome = quality_gate("formatter").execute_with_validation(lambda: payload, "Formatter")

    assert outcome.result is payload
    assert outcome.validation.is_valid is True


def test_quality_gate_presets_and_unknown_category() -> None:
    assert quality_gate("generator").config.min_output_length == 200
    assert quality_gate("formatter").config.min_confidence == 0.98
    assert quality_gate("validator", max_retries=5).config.max_retries == 5
    with pytest.raises(ValueError, match="Unknown quality gate category"):
        quality_gate("oracle")


def test_chain_accuracy_compounds() -> None:
    assert chain_accuracy(0.9, 2) == pytest.approx(0.81)
    assert chain_accuracy(0.95, 7) == pytest.approx(0.6983, abs=1e-4)
    assert required_step_accuracy(0.95, 7) == pytest.approx(0.99270, abs=1e-5)


def test_chain_accuracy_report_lines() -> None:
    lines = chain_accuracy_report(7, target=0.95)

    assert lines[0] == "Chain accuracy for 7 sequential steps:"
    assert "[low] 85% per step -> 32.1% end to end" in lines[1]
    assert "[ok] 99% per step -> 93.2% end to end" in lines[4]
    assert lines[-1] == "Target 95% end to end requires 99.3% per step."
