from .evidence import evidence_count_gate, format_evidence, has_failure_signal, has_success_signal
from .validator import (
    LLMValidator,
    VerdictParseError,
    VerdictValidator,
    normalize_verdict,
    parse_verdict,
    validate_delta,
)

__all__ = [
    "LLMValidator",
    "VerdictParseError",
    "VerdictValidator",
    "evidence_count_gate",
    "format_evidence",
    "has_failure_signal",
    "has_success_signal",
    "normalize_verdict",
    "parse_verdict",
    "validate_delta",
]
