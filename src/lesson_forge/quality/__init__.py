"""Quality gate for pipeline step outputs."""

from lesson_forge.quality.gate import (
    QUALITY_GATES,
    GateOutcome,
    QualityGate,
    QualityGateConfig,
    ValidationResult,
    chain_accuracy,
    estimate_tokens,
    quality_gate,
    required_step_accuracy,
)

__all__ = [
    "QUALITY_GATES",
    "GateOutcome",
    "QualityGate",
    "QualityGateConfig",
    "ValidationResult",
    "chain_accuracy",
    "estimate_tokens",
    "quality_gate",
    "required_step_accuracy",
]
