# agent_playbook/core/scoring.py
"""Time-decayed confidence scoring and the maturity state machine.

Everything here is a pure function of a bullet, a ScoringConfig and a
reference time; nothing touches disk.
"""

from dataclasses import dataclass
from datetime import datetime

from agent_playbook.utils import now

from .config import ScoringConfig
from .schema import Bullet, FeedbackEvent, Maturity

SECONDS_PER_DAY = 86400.0

# Ordering used to tell promotions from demotions
MATURITY_RANK: dict[str, int] = {
    "deprecated": 0,
    "candidate": 1,
    "established": 2,
    "proven": 3,
}


@dataclass(frozen=True)
class DecayedCounts:
    helpful: float
    harmful: float


def decayed_value(event: FeedbackEvent, as_of: datetime, half_life_days: float) -> float:
    """Weight of a single feedback event after exponential decay.

    Args:
        event: Feedback event to weigh
        as_of: Reference time
        half_life_days: Days after which the weight halves

    Returns:
        ``0.5 ** (age_days / half_life_days)``, capped at 1.0 so future-dated
        events never count for more than a fresh one
    """
    age_days = (as_of - event.timestamp).total_seconds() / SECONDS_PER_DAY
    return min(1.0, 0.5 ** (age_days / half_life_days))


def _half_life(bullet: Bullet, config: ScoringConfig) -> float:
    return bullet.half_life_days or config.decay_half_life_days


def get_decayed_counts(
    bullet: Bullet, config: ScoringConfig, as_of: datetime | None = None
) -> DecayedCounts:
    as_of = as_of or now()
    half_life = _half_life(bullet, config)
    helpful = 0.0
    harmful = 0.0
    for event in bullet.feedback_events:
        weight = decayed_value(event, as_of, half_life)
        if event.type == "helpful":
            helpful += weight
        else:
            harmful += weight
    return DecayedCounts(helpful=helpful, harmful=harmful)


def maturity_multiplier(maturity: Maturity, config: ScoringConfig) -> float:
    return config.maturity_multipliers.get(maturity, 1.0)


def effective_score(
    bullet: Bullet, config: ScoringConfig, as_of: datetime | None = None
) -> float:
    """Confidence score: decayed helpful minus weighted decayed harmful, scaled by maturity.

    A bullet without feedback scores exactly 0.
    """
    if not bullet.feedback_events:
        return 0.0
    counts = get_decayed_counts(bullet, config, as_of)
    raw = counts.helpful - config.harmful_multiplier * counts.harmful
    return maturity_multiplier(bullet.maturity, config) * raw


def calculate_maturity_state(bullet: Bullet, config: ScoringConfig) -> Maturity:
    """Compute the maturity a bullet's feedback counts justify.

    Args:
        bullet: Bullet to evaluate
        config: Scoring thresholds

    Returns:
        The maturity the bullet should have; may equal the current one
    """
    if bullet.deprecated:
        return "deprecated"

    helpful = bullet.helpful_count
    harmful = bullet.harmful_count
    total = helpful + harmful

    if total < config.min_feedback_for_active:
        return "candidate"

    harmful_ratio = harmful / total
    if harmful_ratio > config.deprecation_harmful_ratio:
        return "deprecated"
    if helpful >= config.min_helpful_for_proven and harmful_ratio <= config.max_harmful_ratio_for_proven:
        return "proven"
    return "established"


def check_for_promotion(bullet: Bullet, config: ScoringConfig) -> Maturity | None:
    """Return the new maturity if it ranks above the current one, else None."""
    target = calculate_maturity_state(bullet, config)
    if target == "deprecated" or bullet.maturity == "deprecated":
        return None
    if MATURITY_RANK[target] > MATURITY_RANK[bullet.maturity]:
        return target
    return None


def check_for_demotion(bullet: Bullet, config: ScoringConfig) -> Maturity | None:
    """Return the new maturity if it ranks below the current one, else None.

    Pinned bullets are never demoted.
    """
    if bullet.pinned or bullet.maturity == "deprecated":
        return None
    target = calculate_maturity_state(bullet, config)
    if MATURITY_RANK[target] < MATURITY_RANK[bullet.maturity]:
        return target
    return None


def is_stale(bullet: Bullet, stale_days: int = 90, as_of: datetime | None = None) -> bool:
    """True when the bullet has had no feedback (or creation) within ``stale_days``."""
    as_of = as_of or now()
    last_seen = max(
        [bullet.created_at, *(event.timestamp for event in bullet.feedback_events)]
    )
    return (as_of - last_seen).total_seconds() / SECONDS_PER_DAY > stale_days
