# agent_playbook/curator/conflicts.py
"""Cheap contradiction heuristics between a proposed rule and existing bullets.

Conflicts are warnings: the caller still adds the bullet and records a report.
"""

import re
from dataclasses import dataclass, field

from agent_playbook.core.schema import Bullet
from agent_playbook.utils import tokenize

NEGATIVE_MARKERS = ("never", "dont", "don't", "avoid", "forbid", "forbidden", "disable", "prevent", "stop", "skip")
POSITIVE_MARKERS = ("always", "must", "required", "ensure", "use", "enable")
EXCEPTION_MARKERS = ("unless", "except", "only if", "only when", "except when")

# Lower overlap needed once either side carries a directive word
DIRECTIVE_MIN_OVERLAP = 0.1
PLAIN_MIN_OVERLAP = 0.2

NEGATION_REASON = "Possible negation conflict (one says do, the other says avoid) with high term overlap"
OPPOSITE_REASON = "Opposite directives (must vs avoid) on similar subject matter"
SCOPE_REASON = "Potential scope conflict (always vs exception) on overlapping topic"


def _compile(markers: tuple[str, ...]) -> re.Pattern[str]:
    # Word boundaries so "use" does not fire on "user"
    alternatives = "|".join(re.escape(m) for m in markers)
    return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


_NEGATIVE_RE = _compile(NEGATIVE_MARKERS)
_POSITIVE_RE = _compile(POSITIVE_MARKERS)
_EXCEPTION_RE = _compile(EXCEPTION_MARKERS)


@dataclass
class DirectiveProfile:
    tokens: set[str] = field(default_factory=set)
    negative: bool = False
    positive: bool = False
    exception: bool = False

    @property
    def has_markers(self) -> bool:
        return self.negative or self.positive or self.exception


@dataclass
class Conflict:
    bullet_id: str
    content: str
    reason: str


def profile(text: str) -> DirectiveProfile:
    return DirectiveProfile(
        tokens=set(tokenize(text)),
        negative=bool(_NEGATIVE_RE.search(text)),
        positive=bool(_POSITIVE_RE.search(text)),
        exception=bool(_EXCEPTION_RE.search(text)),
    )


def _conflict_reason(new: DirectiveProfile, old: DirectiveProfile) -> str | None:
    if new.negative != old.negative:
        return NEGATION_REASON
    if (new.positive and old.negative) or (old.positive and new.negative):
        return OPPOSITE_REASON
    if (new.positive and old.exception) or (old.positive and new.exception):
        return SCOPE_REASON
    return None


def detect_conflicts(new_content: str, existing: list[Bullet]) -> list[Conflict]:
    """Find active bullets that plausibly contradict ``new_content``.

    Args:
        new_content: Text of the proposed rule
        existing: Candidate bullets to compare against (inactive ones are ignored)

    Returns:
        One Conflict per contradicting bullet, in input order
    """
    new = profile(new_content)
    if not new.tokens:
        return []

    conflicts: list[Conflict] = []
    for bullet in existing:
        if not bullet.is_active:
            continue
        old = profile(bullet.content)
        if not old.tokens:
            continue

        min_overlap = DIRECTIVE_MIN_OVERLAP if new.has_markers or old.has_markers else PLAIN_MIN_OVERLAP
        overlap = len(new.tokens & old.tokens) / len(new.tokens | old.tokens)
        if overlap < min_overlap:
            continue

        reason = _conflict_reason(new, old)
        if reason is not None:
            conflicts.append(Conflict(bullet_id=bullet.id, content=bullet.content, reason=reason))
    return conflicts
