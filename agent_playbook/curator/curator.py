# agent_playbook/curator/curator.py
import logging
import re
from collections.abc import Callable

from pydantic import ValidationError

from agent_playbook.core.config import PlaybookConfig
from agent_playbook.core.schema import (
    AddDelta,
    Bullet,
    ConflictReport,
    CurationResult,
    DecisionLog,
    DeprecateDelta,
    FeedbackEvent,
    HarmfulDelta,
    HelpfulDelta,
    InversionReport,
    MergeDelta,
    Playbook,
    PlaybookDelta,
    PromotionReport,
    ReplaceDelta,
)
from agent_playbook.core.scoring import (
    MATURITY_RANK,
    calculate_maturity_state,
    check_for_demotion,
    check_for_promotion,
)
from agent_playbook.core.store import add_deprecated_pattern
from agent_playbook.utils import (
    extract_agent_from_path,
    hash_content,
    jaccard_similarity,
    log_event,
    now,
    truncate,
)

from .conflicts import detect_conflicts

logger = logging.getLogger(__name__)

_INVERSION_PREFIX_RE = re.compile(r"^(always |prefer |use |try |consider |ensure )", re.IGNORECASE)


def invert_content(content: str, harmful_count: int) -> str:
    """Turn a harmful rule's text into its anti-pattern counterpart.

    "Always use X" marked harmful 3 times becomes
    "AVOID: use X. Marked harmful 3 times".
    """
    cleaned = _INVERSION_PREFIX_RE.sub("", content.strip(), count=1).strip().rstrip(".")
    return f"AVOID: {cleaned}. Marked harmful {harmful_count} times"


def invert_to_anti_pattern(bullet: Bullet, config: PlaybookConfig) -> Bullet:
    return Bullet(
        content=invert_content(bullet.content, bullet.harmful_count),
        category=bullet.category,
        kind="anti_pattern",
        type="anti-pattern",
        scope=bullet.scope,
        scope_key=bullet.scope_key,
        workspace=bullet.workspace,
        state="active",
        maturity="candidate",
        half_life_days=config.scoring.decay_half_life_days,
        source_sessions=list(bullet.source_sessions),
        source_agents=list(bullet.source_agents),
        tags=[*bullet.tags, "inverted", "anti-pattern"],
        reasoning=f"Inverted from {bullet.id} after repeated harmful feedback",
    )


def matches_deprecated_pattern(content: str, playbook: Playbook) -> str | None:
    """Return the tombstone pattern that blocks ``content``, if any."""
    lowered = content.lower()
    for tombstone in playbook.deprecated_patterns:
        pattern = tombstone.pattern
        if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
            try:
                if re.search(pattern[1:-1], content, re.IGNORECASE):
                    return pattern
            except re.error:
                logger.warning(f"Ignoring invalid deprecated pattern regex: {pattern}")
            continue
        if pattern.lower() in lowered:
            return pattern
    return None


def screen_new_content(content: str, config: PlaybookConfig, *playbooks: Playbook) -> str | None:
    """Return why ``content`` may not become a new bullet, or None if it may.

    Covers the checks that do not depend on the rest of the batch: empty or
    too-short text and deprecated-pattern tombstones in any given playbook.
    """
    content = content.strip()
    if not content:
        return "Missing required content"
    if len(content) < config.curation.min_content_length:
        return "Content too short to be a useful rule"
    for playbook in playbooks:
        pattern = matches_deprecated_pattern(content, playbook)
        if pattern is not None:
            return f"Content matches a deprecated pattern: {pattern}"
    return None


class _Curation:
    """State for one curation run over a target playbook."""

    def __init__(self, target: Playbook, context: Playbook, config: PlaybookConfig):
        self.target = target
        self.context = context
        self.config = config
        self.log = DecisionLog()
        self.result = CurationResult(playbook=target)
        self.batch_added: list[Bullet] = []
        # Bullets whose maturity change was already reported in this run
        self.reported: set[str] = set()
        self.touched: set[str] = set()
        self.known_hashes: dict[str, Bullet] = {}
        for bullet in [*context.bullets, *target.bullets]:
            self.known_hashes.setdefault(hash_content(bullet.content), bullet)

    def run(self, deltas: list[PlaybookDelta]) -> CurationResult:
        handlers: dict[type, Callable] = {
            AddDelta: self._apply_add,
            HelpfulDelta: self._apply_feedback,
            HarmfulDelta: self._apply_feedback,
            ReplaceDelta: self._apply_replace,
            DeprecateDelta: self._apply_deprecate,
            MergeDelta: self._apply_merge,
        }
        for delta in deltas:
            handler = handlers.get(type(delta))
            if handler is None:
                self.log = self.log.record(
                    "add", "rejected", f"Unsupported delta type: {type(delta).__name__}"
                )
                applied = False
            else:
                applied = handler(delta)
            if applied:
                self.result.applied += 1
            else:
                self.result.skipped += 1

        self._maturity_pass()
        self._prune()
        self.result.decision_log = self.log
        return self.result

    # --- add ---------------------------------------------------------------

    def _skip(self, phase, reason: str, **kwargs) -> bool:
        self.log = self.log.record(phase, "skipped", reason, **kwargs)
        return False

    def _apply_add(self, delta: AddDelta) -> bool:
        payload = delta.bullet
        content = (payload.content or "").strip()
        if not content:
            self.log = self.log.record("add", "rejected", "Missing required content")
            return False
        if len(content) < self.config.curation.min_content_length:
            self.log = self.log.record(
                "add", "rejected", "Content too short to be a useful rule", content=content
            )
            return False

        exact = self.known_hashes.get(hash_content(content))
        if exact is not None:
            reason = (
                "Exact duplicate exists but is deprecated"
                if not exact.is_active
                else "Exact duplicate already in playbook"
            )
            return self._skip("dedup", reason, bullet_id=exact.id, content=content)

        blocked_by = matches_deprecated_pattern(content, self.context) or matches_deprecated_pattern(
            content, self.target
        )
        if blocked_by is not None:
            return self._skip(
                "dedup",
                "Content matches a deprecated pattern",
                content=content,
                details={"pattern": blocked_by},
            )

        peers: list[Bullet] = []
        seen: set[str] = set()
        for b in [*self.context.bullets, *self.batch_added]:
            if b.id in seen or not b.is_active or b.category != payload.category:
                continue
            seen.add(b.id)
            peers.append(b)
        best: Bullet | None = None
        best_score = 0.0
        for bullet in peers:
            score = jaccard_similarity(content, bullet.content)
            if score > best_score:
                best, best_score = bullet, score
        if best is not None and best_score >= self.config.curation.dedup_similarity_threshold:
            return self._skip(
                "dedup",
                "Similar bullet already exists",
                bullet_id=best.id,
                content=content,
                details={"similarity": round(best_score, 3), "similarTo": truncate(best.content, 100)},
            )

        if payload.id is not None and self.target.get(payload.id) is not None:
            return self._skip("add", f"Bullet id {payload.id} already exists", content=content)

        source = delta.source_session
        try:
            bullet = Bullet(
                **({"id": payload.id} if payload.id else {}),
                content=content,
                category=payload.category,
                kind=payload.kind,
                scope=payload.scope,
                scope_key=payload.scope_key,
                workspace=payload.workspace,
                type=payload.type,
                tags=list(payload.tags),
                state=payload.state or "draft",
                maturity="candidate",
                half_life_days=self.config.scoring.decay_half_life_days,
                source_sessions=[source] if source else [],
                source_agents=[extract_agent_from_path(source)] if source else [],
                reasoning=payload.reasoning or (delta.reason.strip() or None),
                search_pointer=payload.search_pointer,
            )
        except ValidationError as e:
            self.log = self.log.record(
                "add", "rejected", f"Invalid bullet payload: {e.errors()[0]['msg']}", content=content
            )
            return False

        for conflict in detect_conflicts(content, peers):
            self.result.conflicts.append(
                ConflictReport(
                    bullet_id=conflict.bullet_id,
                    existing_content=conflict.content,
                    new_content=content,
                    reason=conflict.reason,
                )
            )
            self.log = self.log.record(
                "conflict",
                "accepted",
                conflict.reason,
                bullet_id=conflict.bullet_id,
                content=content,
                details={"newBulletId": bullet.id},
            )

        self.target.bullets.append(bullet)
        self.batch_added.append(bullet)
        self.known_hashes[hash_content(content)] = bullet
        self.touched.add(bullet.id)
        self.log = self.log.record(
            "add",
            "accepted",
            "New bullet added to playbook",
            bullet_id=bullet.id,
            content=content,
            details={"category": bullet.category, "state": bullet.state},
        )
        log_event("bullet_added", {"bullet_id": bullet.id, "category": bullet.category})
        return True

    # --- helpful / harmful -------------------------------------------------

    def _apply_feedback(self, delta: HelpfulDelta | HarmfulDelta) -> bool:
        kind = delta.type
        bullet = self.target.get(delta.bullet_id)
        if bullet is None:
            return self._skip("feedback", f"Bullet not found for {kind} feedback", bullet_id=delta.bullet_id)
        if bullet.has_feedback_from(kind, delta.source_session):
            return self._skip(
                "feedback",
                f"{kind.capitalize()} feedback already recorded for this session",
                bullet_id=bullet.id,
            )

        bullet.add_feedback(
            FeedbackEvent(
                type=kind,
                session_path=delta.source_session,
                reason=delta.reason,
                context=delta.context,
            )
        )
        if kind == "helpful":
            bullet.last_validated_at = now()
        self.touched.add(bullet.id)
        self.log = self.log.record(
            "feedback",
            "accepted",
            f"{kind.capitalize()} feedback recorded",
            bullet_id=bullet.id,
            content=bullet.content,
            details={"helpfulCount": bullet.helpful_count, "harmfulCount": bullet.harmful_count},
        )
        log_event("bullet_marked", {"bullet_id": bullet.id, "feedback": kind})

        previous = bullet.maturity
        target = calculate_maturity_state(bullet, self.config.scoring)
        if target == previous:
            return True
        if target == "deprecated":
            if kind == "harmful":
                self._deprecate_for_harm(bullet)
            return True
        if bullet.pinned and MATURITY_RANK[target] < MATURITY_RANK[previous]:
            return True
        self._change_maturity(bullet, target, "Maturity recomputed after feedback")
        return True

    def _deprecate_for_harm(self, bullet: Bullet) -> None:
        if bullet.pinned:
            self.log = self.log.record(
                "inversion",
                "skipped",
                "Pinned bullet exceeded harmful ratio; left in place",
                bullet_id=bullet.id,
                content=bullet.content,
            )
            return

        previous = bullet.maturity
        if bullet.is_negative:
            bullet.mark_deprecated("Negative rule marked harmful (likely incorrect restriction)")
            self.result.promotions.append(
                PromotionReport(
                    bullet_id=bullet.id,
                    from_maturity=previous,
                    to_maturity="deprecated",
                    reason="Harmful ratio exceeded deprecation threshold",
                )
            )
            self.reported.add(bullet.id)
            self.log = self.log.record(
                "inversion",
                "rejected",
                "Negative rule deprecated (not inverted) due to harmful feedback",
                bullet_id=bullet.id,
                content=bullet.content,
            )
            log_event("bullet_deprecated", {"bullet_id": bullet.id, "reason": "negative_rule_harmful"})
            return

        anti_pattern = invert_to_anti_pattern(bullet, self.config)
        self.target.bullets.append(anti_pattern)
        self.known_hashes[hash_content(anti_pattern.content)] = anti_pattern
        self.touched.add(anti_pattern.id)
        bullet.mark_deprecated(f"Inverted to anti-pattern: {anti_pattern.id}", anti_pattern.id)
        self.reported.add(bullet.id)
        self.result.inversions.append(
            InversionReport(
                original_id=bullet.id,
                original_content=bullet.content,
                anti_pattern_id=anti_pattern.id,
                anti_pattern_content=anti_pattern.content,
            )
        )
        self.log = self.log.record(
            "inversion",
            "accepted",
            "Rule inverted to anti-pattern due to harmful feedback",
            bullet_id=bullet.id,
            content=bullet.content,
            details={"antiPatternId": anti_pattern.id, "from": previous},
        )
        log_event("bullet_inverted", {"bullet_id": bullet.id, "anti_pattern_id": anti_pattern.id})

    def _change_maturity(self, bullet: Bullet, target, reason: str) -> None:
        previous = bullet.maturity
        bullet.maturity = target
        bullet.updated_at = now()
        promoted = MATURITY_RANK[target] > MATURITY_RANK[previous]
        if promoted:
            bullet.promoted_at = bullet.updated_at
        self.result.promotions.append(
            PromotionReport(bullet_id=bullet.id, from_maturity=previous, to_maturity=target, reason=reason)
        )
        self.reported.add(bullet.id)
        self.log = self.log.record(
            "promotion" if promoted else "demotion",
            "accepted",
            f"Maturity {'promoted' if promoted else 'demoted'} from {previous} to {target}",
            bullet_id=bullet.id,
            content=bullet.content,
        )
        log_event("maturity_changed", {"bullet_id": bullet.id, "from": previous, "to": target})

    # --- replace / deprecate / merge ---------------------------------------

    def _apply_replace(self, delta: ReplaceDelta) -> bool:
        bullet = self.target.get(delta.bullet_id)
        if bullet is None:
            return self._skip("add", "Bullet not found for replacement", bullet_id=delta.bullet_id)
        new_content = delta.new_content.strip()
        if not new_content:
            return self._skip("add", "Replacement content is empty", bullet_id=bullet.id)

        previous = bullet.content
        bullet.content = new_content
        bullet.updated_at = now()
        previous_hash = hash_content(previous)
        holder = self.known_hashes.get(previous_hash)
        if holder is not None and holder.id == bullet.id:
            del self.known_hashes[previous_hash]
        self.known_hashes[hash_content(new_content)] = bullet
        self.log = self.log.record(
            "add",
            "modified",
            "Bullet content replaced",
            bullet_id=bullet.id,
            content=new_content,
            details={"previousContent": truncate(previous, 100)},
        )
        return True

    def _apply_deprecate(self, delta: DeprecateDelta) -> bool:
        bullet = self.target.get(delta.bullet_id)
        if bullet is None:
            return self._skip("demotion", "Bullet not found for deprecation", bullet_id=delta.bullet_id)
        replacement = delta.replaced_by
        if replacement is not None and self.target.get(replacement) is None and self.context.get(replacement) is None:
            # A merge whose combined bullet was skipped leaves its originals alone
            return self._skip(
                "demotion",
                "Replacement bullet does not exist",
                bullet_id=bullet.id,
                details={"replacedBy": replacement},
            )
        bullet.mark_deprecated(delta.reason, delta.replaced_by)
        self.touched.add(bullet.id)
        self.reported.add(bullet.id)
        self.log = self.log.record(
            "demotion",
            "accepted",
            "Bullet deprecated",
            bullet_id=bullet.id,
            details={"reason": delta.reason, "replacedBy": delta.replaced_by},
        )
        log_event("bullet_deprecated", {"bullet_id": bullet.id, "reason": delta.reason})
        return True

    def _apply_merge(self, delta: MergeDelta) -> bool:
        found = [self.target.get(bullet_id) for bullet_id in delta.bullet_ids]
        originals = [b for b in found if b is not None]
        if len(originals) != len(delta.bullet_ids) or len(originals) < 2:
            return self._skip(
                "add",
                "Cannot merge: missing bullets or insufficient count",
                details={"requested": len(delta.bullet_ids), "found": len(originals)},
            )
        merged_content = delta.merged_content.strip()
        blocked = screen_new_content(merged_content, self.config, self.context, self.target)
        if blocked is not None:
            return self._skip("add", f"Cannot merge: {blocked}", content=merged_content)

        tags: list[str] = []
        sessions: list[str] = []
        for original in originals:
            tags.extend(t for t in original.tags if t not in tags)
            sessions.extend(s for s in original.source_sessions if s not in sessions)
        first = originals[0]
        merged = Bullet(
            content=merged_content,
            category=first.category,
            kind=first.kind,
            scope=first.scope,
            scope_key=first.scope_key,
            workspace=first.workspace,
            tags=tags,
            source_sessions=sessions,
            half_life_days=self.config.scoring.decay_half_life_days,
            reasoning=delta.reason,
        )
        self.target.bullets.append(merged)
        self.batch_added.append(merged)
        self.known_hashes[hash_content(merged_content)] = merged
        self.touched.add(merged.id)
        for original in originals:
            original.mark_deprecated(f"Merged into {merged.id}", merged.id)
            self.touched.add(original.id)
            self.reported.add(original.id)

        self.log = self.log.record(
            "add",
            "accepted",
            "Bullets merged into new combined bullet",
            bullet_id=merged.id,
            content=merged_content,
            details={"mergedFrom": list(delta.bullet_ids)},
        )
        return True

    # --- post-processing ---------------------------------------------------

    def _maturity_pass(self) -> None:
        scoring = self.config.scoring
        for bullet in self.target.bullets:
            if bullet.deprecated or bullet.id in self.reported:
                continue
            target = check_for_promotion(bullet, scoring) or check_for_demotion(bullet, scoring)
            # Deprecation only happens through harmful feedback or an explicit delta
            if target is None or target == "deprecated":
                continue
            self._change_maturity(bullet, target, "Maturity recomputed from feedback counts")

    def _prune(self) -> None:
        threshold = self.config.curation.prune_harmful_threshold
        policy = self.config.curation.prune_policy
        survivors: list[Bullet] = []
        for bullet in self.target.bullets:
            prunable = (
                bullet.deprecated
                and not bullet.pinned
                and bullet.harmful_count > threshold
                and bullet.state != "retired"
            )
            if not prunable:
                survivors.append(bullet)
                continue

            self.result.pruned += 1
            self.result.pruned_ids.append(bullet.id)
            self.log = self.log.record(
                "prune",
                "accepted",
                f"Pruned deprecated bullet ({policy})",
                bullet_id=bullet.id,
                content=bullet.content,
                details={"harmfulCount": bullet.harmful_count},
            )
            if policy == "delete":
                add_deprecated_pattern(
                    self.target,
                    bullet.content,
                    reason=bullet.deprecation_reason or "Pruned after repeated harmful feedback",
                    replacement=bullet.replaced_by,
                )
                continue
            bullet.state = "retired"
            survivors.append(bullet)
        self.target.bullets = survivors


def curate_playbook(
    target: Playbook,
    deltas: list[PlaybookDelta],
    config: PlaybookConfig,
    context: Playbook | None = None,
) -> CurationResult:
    """Apply deltas, in order, to ``target`` and report what happened.

    The target playbook is mutated in place and returned inside the result.
    Deltas that cannot be applied are counted as skipped with a decision-log
    reason; nothing here raises for bad input.

    Args:
        target: Playbook to mutate
        deltas: Deltas to apply, in order
        config: Curation and scoring thresholds
        context: Read-only merged view used for duplicate and conflict lookups.
            Defaults to ``target``.

    Returns:
        CurationResult with counts, reports and the decision log
    """
    curation = _Curation(target, context if context is not None else target, config)
    result = curation.run(deltas)
    logger.info(
        f"Curated {len(deltas)} deltas: applied={result.applied} skipped={result.skipped} "
        f"conflicts={len(result.conflicts)} inversions={len(result.inversions)} pruned={result.pruned}"
    )
    return result
