# agent_playbook/validation/validator.py
import logging
from typing import Protocol

from pydantic import ValidationError

from agent_playbook.core.config import PlaybookConfig
from agent_playbook.core.schema import (
    AddDelta,
    DecisionLog,
    PlaybookDelta,
    ValidationResult,
    ValidatorVerdict,
)
from agent_playbook.llm import LLMClient, LLMError, Message, ProviderChain, ResilientLLMClient
from agent_playbook.reflector.parser import load_json_object
from agent_playbook.search.client import EvidenceSearch, safe_search
from agent_playbook.utils import extract_keywords, truncate

from .evidence import evidence_count_gate, format_evidence

logger = logging.getLogger(__name__)

REFINE_CONFIDENCE_FACTOR = 0.8
MAX_EVIDENCE_CHARS = 30000

VALIDATOR_PROMPT = """You are a scientific validator checking if a proposed rule is supported by historical evidence.

<proposed_rule>
{rule}
</proposed_rule>

<historical_evidence>
{evidence}
</historical_evidence>

Analyze whether the evidence supports, contradicts, or is neutral toward the proposed rule.

Consider:
1. How many sessions show success when following this pattern?
2. How many sessions show failure when following this pattern?
3. Are there edge cases or conditions where the rule doesn't apply?
4. Is the rule too broad or too specific?

Respond with a JSON verdict object (no markdown fencing):
{{
  "verdict": "ACCEPT" | "REJECT" | "REFINE",
  "confidence": number between 0.0 and 1.0,
  "reason": string,
  "suggested_refinement": string or null,
  "supporting_evidence": [string],
  "contradicting_evidence": [string]
}}"""


class VerdictParseError(Exception):
    """Raised when validator output cannot be parsed into a verdict."""

    pass


class VerdictValidator(Protocol):
    def validate(self, rule: str, evidence: str) -> ValidatorVerdict: ...


def parse_verdict(json_str: str) -> ValidatorVerdict:
    """Parse the validator's JSON reply.

    Accepts ``suggested_refinement``/``suggestedRefinement`` and a nested
    ``evidence: {supporting, contradicting}`` block as alternative spellings.

    Raises:
        VerdictParseError: If the reply is not a valid verdict
    """
    data = load_json_object(json_str, VerdictParseError)
    nested = data.get("evidence") if isinstance(data.get("evidence"), dict) else {}
    verdict = str(data.get("verdict", "")).upper()
    try:
        return ValidatorVerdict(
            verdict=verdict,
            confidence=float(data.get("confidence", 0.0)),
            reason=str(data.get("reason", "")),
            supporting_evidence=data.get("supporting_evidence") or nested.get("supporting") or [],
            contradicting_evidence=data.get("contradicting_evidence") or nested.get("contradicting") or [],
            refined_rule=data.get("suggested_refinement") or data.get("suggestedRefinement"),
        )
    except (ValidationError, TypeError, ValueError) as e:
        raise VerdictParseError(f"Invalid verdict: {e}") from None


def normalize_verdict(verdict: ValidatorVerdict) -> ValidatorVerdict:
    """Map REFINE to ACCEPT_WITH_CAUTION with reduced confidence."""
    if verdict.verdict != "REFINE":
        return verdict
    return verdict.model_copy(
        update={
            "verdict": "ACCEPT_WITH_CAUTION",
            "confidence": verdict.confidence * REFINE_CONFIDENCE_FACTOR,
        }
    )


class LLMValidator:
    """LLM-backed verdict collaborator."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        config: PlaybookConfig | None = None,
        max_retries: int = 2,
        temperature: float = 0.2,
    ):
        """Initialize LLMValidator.

        Args:
            llm_client: Client to use. If None, builds the retrying provider chain
                from config.
            config: Configuration used when building the default client
            max_retries: Parse attempts before giving up
            temperature: LLM temperature
        """
        if llm_client is None:
            from agent_playbook.core.config import get_config

            llm_client = ResilientLLMClient(ProviderChain.from_config(config or get_config()))
        self.client = llm_client
        self.max_retries = max(1, max_retries)
        self.temperature = temperature

    def validate(self, rule: str, evidence: str) -> ValidatorVerdict:
        """Ask the LLM whether the evidence supports ``rule``.

        Raises:
            VerdictParseError: If no attempt produced a parseable verdict
        """
        prompt = VALIDATOR_PROMPT.format(rule=rule, evidence=truncate(evidence, MAX_EVIDENCE_CHARS))
        last_error: VerdictParseError | None = None
        for attempt in range(self.max_retries):
            response = self.client.complete(
                [Message(role="user", content=prompt)], temperature=self.temperature
            )
            try:
                return parse_verdict(response.text)
            except VerdictParseError as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    prompt += (
                        f"\n\nPrevious attempt failed: {e}. "
                        "Please output ONLY valid JSON without markdown fencing."
                    )
        raise VerdictParseError(
            f"Failed to parse verdict after {self.max_retries} attempts: {last_error}"
        )


def validate_delta(
    delta: PlaybookDelta,
    config: PlaybookConfig,
    search: EvidenceSearch | None = None,
    validator: VerdictValidator | None = None,
) -> ValidationResult:
    """Decide whether a proposed delta may enter the playbook.

    Only ``add`` deltas are validated; every other type passes straight
    through. The returned result always carries the decision log for the
    branch taken.

    Args:
        delta: Proposed delta
        config: Validation thresholds
        search: Evidence search collaborator
        validator: Verdict collaborator consulted only for ambiguous evidence

    Returns:
        ValidationResult. ``suggested_state`` is "active" only when the
        evidence gate auto-accepted the rule.
    """
    log = DecisionLog()

    if not isinstance(delta, AddDelta):
        log = log.record("validation", "skipped", f"Non-add delta type: {delta.type}")
        return ValidationResult(valid=True, reason="Non-add delta", decision_log=log)

    content = delta.bullet.content or ""
    settings = config.validation
    if not settings.enabled:
        log = log.record("validation", "skipped", "Validation disabled in config", content=content)
        return ValidationResult(valid=True, reason="Validation disabled", suggested_state="draft", decision_log=log)

    if len(content) < settings.min_content_length:
        log = log.record(
            "validation",
            "skipped",
            f"Content too short ({len(content)} chars < {settings.min_content_length})",
            content=content,
        )
        return ValidationResult(valid=True, reason="Content too short to validate", suggested_state="draft", decision_log=log)

    gate = evidence_count_gate(content, search, settings)
    gate_details = {
        "sessionCount": gate.session_count,
        "successCount": gate.success_sessions,
        "failureCount": gate.failure_sessions,
    }

    if not gate.passed:
        logger.info(f"Rule rejected by evidence gate: {gate.reason}")
        log = log.record("gate", "rejected", gate.reason, content=content, details=gate_details)
        return ValidationResult(
            valid=False, verdict="REJECT", confidence=1.0, reason=gate.reason, gate=gate, decision_log=log
        )

    if gate.suggested_state == "active":
        log = log.record(
            "gate", "accepted", f"Auto-accepted by evidence gate: {gate.reason}", content=content, details=gate_details
        )
        return ValidationResult(
            valid=True,
            verdict="ACCEPT",
            confidence=1.0,
            reason=gate.reason,
            suggested_state="active",
            gate=gate,
            decision_log=log,
        )

    if gate.session_count == 0:
        log = log.record(
            "gate", "accepted", f"Accepted as draft (no history): {gate.reason}", content=content, details=gate_details
        )
        return ValidationResult(valid=True, reason=gate.reason, suggested_state="draft", gate=gate, decision_log=log)

    evidence_hits = []
    if search is not None:
        evidence_hits = safe_search(
            search,
            " ".join(extract_keywords(content)),
            limit=settings.evidence_search_limit,
            days=settings.lookback_days,
        ).hits
    evidence_text = format_evidence(evidence_hits)

    try:
        if validator is None:
            validator = LLMValidator(config=config)
        raw = validator.validate(content, evidence_text)
    except (LLMError, VerdictParseError) as e:
        logger.warning(f"LLM validation unavailable, accepting as draft: {e}")
        log = log.record(
            "llm", "skipped", f"LLM validation unavailable: {e}", content=content, details=gate_details
        )
        return ValidationResult(
            valid=True, reason="LLM validation unavailable", suggested_state="draft", gate=gate, decision_log=log
        )

    verdict = normalize_verdict(raw)
    valid = verdict.verdict in ("ACCEPT", "ACCEPT_WITH_CAUTION")
    log = log.record(
        "llm",
        "accepted" if valid else "rejected",
        f"LLM verdict {raw.verdict}: {verdict.reason}",
        content=content,
        details={"verdict": verdict.verdict, "confidence": verdict.confidence, **gate_details},
    )
    return ValidationResult(
        valid=valid,
        verdict=verdict.verdict,
        confidence=verdict.confidence,
        reason=verdict.reason,
        refined_rule=verdict.refined_rule,
        suggested_state="draft",
        gate=gate,
        decision_log=log,
    )
