from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from agent_playbook.core.schema import (
    AddDelta,
    Bullet,
    DecisionLog,
    FeedbackEvent,
    HarmfulDelta,
    MergeDelta,
    HelpfulDelta,
    Playbook,
    parse_delta,
    parse_delta_list,
)


class TestBulletInvariants:
    def test_defaults(self):
        bullet = Bullet(content="Run the linter before pushing")
        assert bullet.id.startswith("b-")
        assert bullet.state == "draft"
        assert bullet.maturity == "candidate"
        assert bullet.scope == "global"
        assert bullet.helpful_count == 0
        assert bullet.created_at.tzinfo is not None

    def test_workspace_scope_requires_workspace(self):
        with pytest.raises(ValidationError, match="workspace scope requires workspace"):
            Bullet(content="Run the linter before pushing", scope="workspace")

    def test_keyed_scope_requires_scope_key(self):
        with pytest.raises(ValidationError, match="requires scopeKey"):
            Bullet(content="Run the linter before pushing", scope="language")
        bullet = Bullet(content="Run the linter before pushing", scope="language", scope_key="python")
        assert bullet.scope_key == "python"

    def test_global_scope_rejects_scope_key(self):
        with pytest.raises(ValidationError, match="scopeKey should be omitted"):
            Bullet(content="Run the linter before pushing", scope_key="python")

    def test_counts_recomputed_from_events(self):
        bullet = Bullet.model_validate(
            {
                "content": "Run the linter before pushing",
                "helpfulCount": 99,
                "harmfulCount": 7,
                "feedbackEvents": [{"type": "helpful"}, {"type": "harmful"}, {"type": "helpful"}],
            }
        )
        assert bullet.helpful_count == 2
        assert bullet.harmful_count == 1

    def test_anti_pattern_is_negative(self):
        bullet = Bullet(content="AVOID: force pushing to main", type="anti-pattern", is_negative=False)
        assert bullet.is_negative is True

    def test_deprecated_forces_maturity(self):
        bullet = Bullet(content="Run the linter before pushing", deprecated=True, maturity="proven")
        assert bullet.maturity == "deprecated"
        assert not bullet.is_active

    def test_naive_timestamps_become_utc(self):
        event = FeedbackEvent(type="helpful", timestamp=datetime(2024, 1, 1, 12, 0))
        assert event.timestamp == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def test_non_positive_half_life_rejected(self):
        with pytest.raises(ValidationError):
            Bullet(content="Run the linter before pushing", half_life_days=0)


class TestBulletFeedback:
    def test_add_and_pop(self):
        bullet = Bullet(content="Run the linter before pushing")
        bullet.add_feedback(FeedbackEvent(type="helpful", session_path="/s/1"))
        bullet.add_feedback(FeedbackEvent(type="harmful", session_path="/s/2"))
        assert (bullet.helpful_count, bullet.harmful_count) == (1, 1)

        popped = bullet.pop_feedback()
        assert popped.type == "harmful"
        assert bullet.harmful_count == 0
        assert bullet.pop_feedback().type == "helpful"
        assert bullet.pop_feedback() is None

    def test_has_feedback_from(self):
        bullet = Bullet(content="Run the linter before pushing")
        bullet.add_feedback(FeedbackEvent(type="helpful", session_path="/s/1"))
        assert bullet.has_feedback_from("helpful", "/s/1")
        assert not bullet.has_feedback_from("harmful", "/s/1")
        assert not bullet.has_feedback_from("helpful", None)

    def test_mark_deprecated(self):
        bullet = Bullet(content="Run the linter before pushing", state="active")
        bullet.mark_deprecated("superseded", replaced_by="b-2")
        assert bullet.deprecated
        assert bullet.maturity == "deprecated"
        assert bullet.replaced_by == "b-2"
        assert bullet.deprecated_at is not None
        assert bullet.state == "active"


class TestPlaybook:
    def test_document_uses_camel_case(self):
        playbook = Playbook(bullets=[Bullet(content="Run the linter before pushing")])
        document = playbook.to_document()
        bullet_doc = document["bullets"][0]
        assert "helpfulCount" in bullet_doc
        assert "feedbackEvents" in bullet_doc
        assert "helpful_count" not in bullet_doc
        assert "deprecatedPatterns" in document

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValidationError, match="duplicate bullet id"):
            Playbook(
                bullets=[
                    Bullet(id="b-1", content="Run the linter before pushing"),
                    Bullet(id="b-1", content="Write tests first"),
                ]
            )

    def test_legacy_schema_version_key(self):
        assert Playbook.model_validate({"schema_version": 1}).schema_version == 1
        assert Playbook.model_validate({"schemaVersion": 3}).schema_version == 3

    def test_get_and_active(self):
        active = Bullet(content="Run the linter before pushing", state="active")
        retired = Bullet(content="Write tests first", state="retired")
        playbook = Playbook(bullets=[active, retired])
        assert playbook.get(active.id) is active
        assert playbook.get("missing") is None
        assert playbook.active_bullets() == [active]


class TestDeltas:
    def test_parse_discriminates_on_type(self):
        delta = parse_delta({"type": "harmful", "bulletId": "b-1", "reason": "caused_bug"})
        assert isinstance(delta, HarmfulDelta)
        assert delta.bullet_id == "b-1"

    def test_parse_add(self):
        delta = parse_delta({"type": "add", "bullet": {"content": "Write tests first", "category": "testing"}})
        assert isinstance(delta, AddDelta)
        assert delta.bullet.category == "testing"
        assert delta.bullet.state is None

    def test_parse_merge(self):
        delta = parse_delta({"type": "merge", "bulletIds": ["a", "b"], "mergedContent": "combined"})
        assert isinstance(delta, MergeDelta)
        assert delta.bullet_ids == ["a", "b"]

    def test_invalid_harmful_reason(self):
        with pytest.raises(ValidationError):
            parse_delta({"type": "harmful", "bulletId": "b-1", "reason": "felt wrong"})

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_delta({"type": "upvote", "bulletId": "b-1"})

    def test_parse_list_keeps_valid_and_reports_rest(self):
        deltas, rejected = parse_delta_list(
            [
                {"type": "helpful", "bulletId": "b-1"},
                {"type": "upvote", "bulletId": "b-1"},
                ["not", "a", "delta"],
                {"type": "merge", "bulletIds": ["a", "b"], "mergedContent": "combined"},
            ]
        )

        assert [type(d) for d in deltas] == [HelpfulDelta, MergeDelta]
        assert len(rejected) == 2
        assert rejected[0].startswith("delta 1 (upvote)")
        assert rejected[1] == "delta 2: not an object"


class TestDecisionLog:
    def test_record_returns_new_log(self):
        log = DecisionLog()
        updated = log.record("add", "accepted", "New bullet", bullet_id="b-1")
        assert len(log) == 0
        assert len(updated) == 1
        assert updated.entries[0].bullet_id == "b-1"

    def test_content_truncated(self):
        log = DecisionLog().record("add", "accepted", "New bullet", content="x" * 300)
        assert len(log.entries[0].content) == 100

    def test_extend_and_actions(self):
        a = DecisionLog().record("gate", "accepted", "ok")
        b = DecisionLog().record("llm", "rejected", "no")
        assert a.extend(b).actions() == ["accepted", "rejected"]

    def test_frozen(self):
        log = DecisionLog()
        with pytest.raises(ValidationError):
            log.entries = ()
