# agent_playbook/validation/evidence.py
"""Pre-LLM evidence gate over historical session search results."""

import logging
import re

from agent_playbook.core.config import ValidationConfig
from agent_playbook.core.schema import EvidenceGateResult
from agent_playbook.search.client import EvidenceSearch, SearchHit, safe_search
from agent_playbook.utils import extract_keywords

logger = logging.getLogger(__name__)

# Anchored on word boundaries so "fixed-width" or "errorless" do not count
SUCCESS_PATTERNS = [
    re.compile(r"\bfixed\s+(the|a|an|this|that|it)\b", re.IGNORECASE),
    re.compile(r"\bsuccessfully\b", re.IGNORECASE),
    re.compile(r"\bsuccess\b(?!ful)", re.IGNORECASE),
    re.compile(r"\bsolved\s+(the|a|an|this|that|it)\b", re.IGNORECASE),
    re.compile(r"\bworking\s+now\b", re.IGNORECASE),
    re.compile(r"\bworks\s+(now|correctly|properly)\b", re.IGNORECASE),
    re.compile(r"\bresolved\b", re.IGNORECASE),
]

FAILURE_PATTERNS = [
    re.compile(r"\bfailed\s+(to|with)\b", re.IGNORECASE),
    re.compile(r"\berror:", re.IGNORECASE),
    re.compile(r"\b(threw|throws)\s+.*error\b", re.IGNORECASE),
    re.compile(r"\bbroken\b", re.IGNORECASE),
    re.compile(r"\bcrash(ed|es|ing)?\b", re.IGNORECASE),
    re.compile(r"\bbug\s+(in|found|caused)\b", re.IGNORECASE),
    re.compile(r"\bdoesn't\s+work\b", re.IGNORECASE),
]


def has_success_signal(text: str) -> bool:
    return any(p.search(text) for p in SUCCESS_PATTERNS)


def has_failure_signal(text: str) -> bool:
    return any(p.search(text) for p in FAILURE_PATTERNS)


def evidence_count_gate(
    content: str,
    search: EvidenceSearch | None,
    config: ValidationConfig,
) -> EvidenceGateResult:
    """Classify historical evidence for a proposed rule without calling an LLM.

    Each session counts once per signal, however many snippets it contributes.

    Args:
        content: Proposed rule text
        search: Evidence search collaborator; None behaves like an unavailable one
        config: Lookback window, search limit and auto-accept/reject thresholds

    Returns:
        EvidenceGateResult. ``passed=False`` only for a strong failure signal.
        ``suggested_state="active"`` only for a strong success signal.
    """
    keywords = extract_keywords(content)
    if not keywords:
        return EvidenceGateResult(
            passed=True,
            reason="No meaningful keywords found for evidence search. Proposing as draft.",
            suggested_state="draft",
        )

    if search is None:
        return EvidenceGateResult(
            passed=True,
            reason="Evidence search unavailable. Proposing as draft.",
            suggested_state="draft",
            keywords=keywords,
            search_failed=True,
        )

    outcome = safe_search(
        search, " ".join(keywords), limit=config.gate_search_limit, days=config.lookback_days
    )
    if outcome.failed:
        return EvidenceGateResult(
            passed=True,
            reason=f"Evidence search unavailable ({outcome.failure.value}). Proposing as draft.",
            suggested_state="draft",
            keywords=keywords,
            search_failed=True,
        )

    sessions: set[str] = set()
    success: set[str] = set()
    failure: set[str] = set()
    for hit in outcome.hits:
        if not hit.session_path:
            continue
        sessions.add(hit.session_path)
        if has_success_signal(hit.snippet):
            success.add(hit.session_path)
        if has_failure_signal(hit.snippet):
            failure.add(hit.session_path)

    counts = {
        "session_count": len(sessions),
        "success_sessions": len(success),
        "failure_sessions": len(failure),
        "keywords": keywords,
    }

    if not sessions:
        return EvidenceGateResult(
            passed=True,
            reason="No historical evidence found. Proposing as draft.",
            suggested_state="draft",
            **counts,
        )
    if len(success) >= config.auto_accept_sessions and not failure:
        return EvidenceGateResult(
            passed=True,
            reason=f"Strong success signal ({len(success)} sessions). Auto-accepting.",
            suggested_state="active",
            **counts,
        )
    if len(failure) >= config.auto_reject_sessions and not success:
        return EvidenceGateResult(
            passed=False,
            reason=f"Strong failure signal ({len(failure)} sessions). Auto-rejecting.",
            suggested_state="draft",
            **counts,
        )
    return EvidenceGateResult(
        passed=True,
        reason="Evidence found but ambiguous. Proceeding to LLM validation.",
        suggested_state="draft",
        **counts,
    )


def format_evidence(hits: list[SearchHit]) -> str:
    """Render search hits as the evidence block of the validator prompt."""
    if not hits:
        return "(No historical evidence found)"
    blocks = [
        f'Session: {hit.session_path}\nSnippet: "{hit.snippet}"\nRelevance: {hit.score}'
        for hit in hits
    ]
    return "\n---\n".join(blocks)
