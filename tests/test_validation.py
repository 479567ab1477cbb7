import pytest

from agent_playbook.core.schema import (
    AddDelta,
    HelpfulDelta,
    NewBulletData,
    ValidatorVerdict,
)
from agent_playbook.llm import LLMError, MockLLMClient
from agent_playbook.search.client import SearchError, SearchFailure, SearchHit
from agent_playbook.validation import (
    LLMValidator,
    VerdictParseError,
    evidence_count_gate,
    format_evidence,
    has_failure_signal,
    has_success_signal,
    normalize_verdict,
    parse_verdict,
    validate_delta,
)

RULE = "Pin dependency versions in the build configuration"


class FakeSearch:
    def __init__(self, hits=None, error=None):
        self.hits = hits or []
        self.error = error
        self.queries = []

    def search(self, query, limit=20, days=None, agent=None, workspace=None):
        self.queries.append((query, limit, days))
        if self.error is not None:
            raise self.error
        return list(self.hits)


class StubValidator:
    def __init__(self, verdict=None, error=None):
        self.verdict = verdict
        self.error = error
        self.calls = 0

    def validate(self, rule, evidence):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.verdict


def _hits(snippet: str, count: int, prefix: str = "s") -> list[SearchHit]:
    return [SearchHit(session_path=f"/sessions/{prefix}-{i}.jsonl", snippet=snippet) for i in range(count)]


def _add(content: str = RULE) -> AddDelta:
    return AddDelta(bullet=NewBulletData(content=content), source_session="/sessions/new.jsonl")


class TestEvidenceGate:
    def test_strong_success_auto_accepts(self, config):
        search = FakeSearch(_hits("Successfully fixed the build by pinning the version", 6))
        gate = evidence_count_gate(RULE, search, config.validation)

        assert gate.passed
        assert gate.suggested_state == "active"
        assert gate.session_count == 6
        assert gate.success_sessions == 6
        assert gate.failure_sessions == 0

    def test_strong_failure_auto_rejects(self, config):
        search = FakeSearch(_hits("The build failed to link after changing flags", 4))
        gate = evidence_count_gate(RULE, search, config.validation)

        assert not gate.passed
        assert gate.failure_sessions == 4
        assert "failure signal" in gate.reason

    def test_sessions_counted_once(self, config):
        hits = _hits("Successfully fixed the build by pinning the version", 1) * 6
        gate = evidence_count_gate(RULE, FakeSearch(hits), config.validation)

        assert gate.session_count == 1
        assert gate.success_sessions == 1
        assert gate.suggested_state == "draft"

    def test_search_failure_proposes_draft(self, config):
        search = FakeSearch(error=SearchError(SearchFailure.UNAVAILABLE, "cass not found"))
        gate = evidence_count_gate(RULE, search, config.validation)

        assert gate.passed
        assert gate.search_failed
        assert gate.suggested_state == "draft"

    def test_no_keywords(self, config):
        gate = evidence_count_gate("the and of a", FakeSearch(), config.validation)
        assert gate.passed
        assert gate.keywords == []

    def test_query_uses_lookback_window(self, config):
        search = FakeSearch()
        evidence_count_gate(RULE, search, config.validation)
        _, limit, days = search.queries[0]
        assert limit == config.validation.gate_search_limit
        assert days == config.validation.lookback_days


class TestValidateDelta:
    def test_auto_accept_skips_llm(self, config):
        search = FakeSearch(_hits("Successfully fixed the build by pinning the version", 6))
        validator = StubValidator()

        result = validate_delta(_add(), config, search=search, validator=validator)

        assert result.valid
        assert result.verdict == "ACCEPT"
        assert result.suggested_state == "active"
        assert result.gate.success_sessions == 6
        assert validator.calls == 0
        assert result.decision_log.entries[0].phase == "gate"

    def test_auto_reject(self, config):
        search = FakeSearch(_hits("The build failed to link after changing flags", 4))
        validator = StubValidator()

        result = validate_delta(_add(), config, search=search, validator=validator)

        assert not result.valid
        assert result.verdict == "REJECT"
        assert "failure signal" in result.reason
        assert validator.calls == 0
        assert result.decision_log.actions() == ["rejected"]

    def test_ambiguous_evidence_asks_llm(self, config):
        hits = _hits("Fixed the flaky test by pinning the version", 2, "ok") + _hits(
            "The build failed to compile after pinning", 2, "bad"
        )
        validator = StubValidator(ValidatorVerdict(verdict="REFINE", confidence=0.9, reason="Too broad"))

        result = validate_delta(_add(), config, search=FakeSearch(hits), validator=validator)

        assert validator.calls == 1
        assert result.valid
        assert result.verdict == "ACCEPT_WITH_CAUTION"
        assert result.confidence == pytest.approx(0.72)
        assert result.suggested_state == "draft"
        assert result.gate.success_sessions == 2
        assert result.gate.failure_sessions == 2

    def test_llm_reject(self, config):
        hits = _hits("Fixed the flaky test by pinning the version", 2, "ok") + _hits(
            "The build failed to compile after pinning", 2, "bad"
        )
        validator = StubValidator(ValidatorVerdict(verdict="REJECT", confidence=0.8, reason="Contradicted"))

        result = validate_delta(_add(), config, search=FakeSearch(hits), validator=validator)

        assert not result.valid
        assert result.verdict == "REJECT"

    def test_non_add_passes_through(self, config):
        validator = StubValidator()
        result = validate_delta(HelpfulDelta(bullet_id="b-1"), config, search=FakeSearch(), validator=validator)
        assert result.valid
        assert validator.calls == 0

    def test_short_content_skipped(self, config):
        search = FakeSearch(_hits("The build failed to link after changing flags", 4))
        result = validate_delta(_add("Pin versions"), config, search=search)
        assert result.valid
        assert result.suggested_state == "draft"
        assert search.queries == []

    def test_validation_disabled(self, config):
        config.validation.enabled = False
        search = FakeSearch(_hits("The build failed to link after changing flags", 4))
        result = validate_delta(_add(), config, search=search)
        assert result.valid
        assert search.queries == []

    def test_search_failure_is_draft(self, config):
        search = FakeSearch(error=SearchError(SearchFailure.TIMEOUT, "slow"))
        validator = StubValidator()

        result = validate_delta(_add(), config, search=search, validator=validator)

        assert result.valid
        assert result.suggested_state == "draft"
        assert result.gate.search_failed
        assert validator.calls == 0

    def test_no_history_is_draft_without_llm(self, config):
        validator = StubValidator()
        result = validate_delta(_add(), config, search=FakeSearch(), validator=validator)
        assert result.valid
        assert result.suggested_state == "draft"
        assert validator.calls == 0

    def test_llm_failure_degrades_to_draft(self, config):
        hits = _hits("Fixed the flaky test by pinning the version", 2, "ok") + _hits(
            "The build failed to compile after pinning", 2, "bad"
        )
        validator = StubValidator(error=LLMError("All LLM providers failed"))

        result = validate_delta(_add(), config, search=FakeSearch(hits), validator=validator)

        assert result.valid
        assert result.suggested_state == "draft"
        entry = result.decision_log.entries[-1]
        assert (entry.phase, entry.action) == ("llm", "skipped")


class TestVerdicts:
    def test_parse_fenced_verdict(self):
        text = (
            "```json\n"
            '{"verdict": "refine", "confidence": 0.7, "reason": "narrow it",'
            ' "suggestedRefinement": "Pin versions for native deps",'
            ' "evidence": {"supporting": ["s1"], "contradicting": ["s2"]}}\n'
            "```"
        )
        verdict = parse_verdict(text)
        assert verdict.verdict == "REFINE"
        assert verdict.refined_rule == "Pin versions for native deps"
        assert verdict.supporting_evidence == ["s1"]
        assert verdict.contradicting_evidence == ["s2"]

    def test_parse_invalid(self):
        with pytest.raises(VerdictParseError):
            parse_verdict("not json")
        with pytest.raises(VerdictParseError):
            parse_verdict('{"verdict": "MAYBE", "confidence": 0.5}')
        with pytest.raises(VerdictParseError):
            parse_verdict('{"verdict": "ACCEPT", "confidence": 2}')

    def test_normalize(self):
        accept = ValidatorVerdict(verdict="ACCEPT", confidence=0.9)
        assert normalize_verdict(accept) is accept
        refined = normalize_verdict(ValidatorVerdict(verdict="REFINE", confidence=0.5))
        assert refined.verdict == "ACCEPT_WITH_CAUTION"
        assert refined.confidence == pytest.approx(0.4)

    def test_llm_validator_retries_parse_errors(self):
        client = MockLLMClient(
            responses=["not json", '{"verdict": "ACCEPT", "confidence": 0.8, "reason": "supported"}']
        )
        validator = LLMValidator(llm_client=client, max_retries=2)

        verdict = validator.validate(RULE, "(No historical evidence found)")

        assert verdict.verdict == "ACCEPT"
        assert len(client.calls) == 2
        assert "Previous attempt failed" in client.calls[1][0].content

    def test_llm_validator_gives_up(self):
        client = MockLLMClient(responses=["nope", "still nope"])
        validator = LLMValidator(llm_client=client, max_retries=2)
        with pytest.raises(VerdictParseError, match="after 2 attempts"):
            validator.validate(RULE, "")


def test_signal_patterns():
    assert has_success_signal("Fixed the import cycle")
    assert has_success_signal("works now after the restart")
    assert not has_success_signal("errorless output with fixed-width columns")
    assert has_failure_signal("error: could not resolve host")
    assert has_failure_signal("the app crashed on launch")
    assert not has_failure_signal("errorless output with fixed-width columns")


def test_format_evidence():
    assert format_evidence([]) == "(No historical evidence found)"
    text = format_evidence(_hits("Fixed the build", 2))
    assert text.count("Session: /sessions/") == 2
    assert "\n---\n" in text
