# agent_playbook/core/schema.py
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from agent_playbook.utils import generate_bullet_id, now, truncate

SCHEMA_VERSION = 2

Scope = Literal["global", "workspace", "language", "framework", "task"]
BulletType = Literal["rule", "anti-pattern"]
BulletKind = Literal["project_convention", "stack_pattern", "workflow_rule", "anti_pattern"]
BulletState = Literal["draft", "active", "retired"]
Maturity = Literal["candidate", "established", "proven", "deprecated"]
FeedbackType = Literal["helpful", "harmful"]
HarmfulReason = Literal[
    "caused_bug",
    "wasted_time",
    "contradicted_requirements",
    "wrong_context",
    "outdated",
    "other",
]
DecisionPhase = Literal[
    "add",
    "dedup",
    "conflict",
    "feedback",
    "promotion",
    "demotion",
    "inversion",
    "prune",
    "validation",
    "gate",
    "llm",
]
DecisionAction = Literal["accepted", "rejected", "skipped", "modified"]

# Scopes that must carry a scope key
KEYED_SCOPES = ("language", "framework", "task")


def ensure_utc(value: datetime) -> datetime:
    """Coerce naive datetimes to UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class CamelModel(BaseModel):
    """Base for persisted models: camelCase on disk, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FeedbackEvent(CamelModel):
    type: FeedbackType
    timestamp: UTCDateTime = Field(default_factory=now)
    session_path: str | None = None
    reason: str | None = None
    context: str | None = None


class Bullet(CamelModel):
    """A single playbook rule (or anti-pattern) with its feedback history.

    ``feedback_events`` is the source of truth; ``helpful_count`` and
    ``harmful_count`` are caches recomputed on construction and on every
    mutation made through ``add_feedback``/``pop_feedback``.
    """

    id: str = Field(default_factory=generate_bullet_id)
    content: str
    category: str = "general"
    kind: BulletKind = "workflow_rule"
    scope: Scope = "global"
    scope_key: str | None = None
    workspace: str | None = None
    type: BulletType = "rule"
    is_negative: bool = False
    state: BulletState = "draft"
    maturity: Maturity = "candidate"
    feedback_events: list[FeedbackEvent] = Field(default_factory=list)
    helpful_count: int = 0
    harmful_count: int = 0
    half_life_days: float = Field(default=90, gt=0)
    pinned: bool = False
    pinned_reason: str | None = None
    deprecated: bool = False
    deprecation_reason: str | None = None
    deprecated_at: UTCDateTime | None = None
    replaced_by: str | None = None
    source_sessions: list[str] = Field(default_factory=list)
    source_agents: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    tags: list[str] = Field(default_factory=list)
    search_pointer: str | None = None
    created_at: UTCDateTime = Field(default_factory=now)
    updated_at: UTCDateTime = Field(default_factory=now)
    last_validated_at: UTCDateTime | None = None
    promoted_at: UTCDateTime | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Bullet":
        if self.scope == "workspace" and not self.workspace:
            raise ValueError("workspace scope requires workspace to be set")
        if self.scope in KEYED_SCOPES and not self.scope_key:
            raise ValueError(f"{self.scope} scope requires scopeKey")
        if self.scope in ("global", "workspace") and self.scope_key:
            raise ValueError("scopeKey should be omitted for global/workspace scopes")

        self.is_negative = self.type == "anti-pattern"
        if self.deprecated:
            self.maturity = "deprecated"
        self._sync_counts()
        return self

    def _sync_counts(self) -> None:
        self.helpful_count = sum(1 for e in self.feedback_events if e.type == "helpful")
        self.harmful_count = sum(1 for e in self.feedback_events if e.type == "harmful")

    @property
    def is_active(self) -> bool:
        return not self.deprecated and self.state != "retired"

    def add_feedback(self, event: FeedbackEvent) -> None:
        self.feedback_events.append(event)
        self._sync_counts()
        self.updated_at = now()

    def pop_feedback(self) -> FeedbackEvent | None:
        """Remove and return the most recent feedback event, if any."""
        if not self.feedback_events:
            return None
        event = self.feedback_events.pop()
        self._sync_counts()
        self.updated_at = now()
        return event

    def has_feedback_from(self, feedback_type: FeedbackType, session_path: str | None) -> bool:
        if not session_path:
            return False
        return any(
            e.type == feedback_type and e.session_path == session_path
            for e in self.feedback_events
        )

    def mark_deprecated(self, reason: str, replaced_by: str | None = None) -> None:
        self.deprecated = True
        self.maturity = "deprecated"
        self.deprecation_reason = reason
        self.deprecated_at = now()
        if replaced_by is not None:
            self.replaced_by = replaced_by
        self.updated_at = self.deprecated_at


class DeprecatedPattern(CamelModel):
    """Tombstone for content that must not be re-added.

    A pattern written as ``/.../`` is treated as a regular expression,
    anything else as a case-insensitive substring.
    """

    pattern: str
    deprecated_at: UTCDateTime = Field(default_factory=now)
    reason: str = ""
    replacement: str | None = None


class PlaybookMetadata(CamelModel):
    created_at: UTCDateTime = Field(default_factory=now)
    last_reflection: UTCDateTime | None = None
    total_reflections: int = 0
    total_sessions_processed: int = 0


class Playbook(CamelModel):
    schema_version: int = Field(
        default=SCHEMA_VERSION,
        validation_alias=AliasChoices("schemaVersion", "schema_version"),
    )
    name: str = "playbook"
    description: str = ""
    metadata: PlaybookMetadata = Field(default_factory=PlaybookMetadata)
    deprecated_patterns: list[DeprecatedPattern] = Field(default_factory=list)
    bullets: list[Bullet] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_unique_ids(self) -> "Playbook":
        seen: set[str] = set()
        for bullet in self.bullets:
            if bullet.id in seen:
                raise ValueError(f"duplicate bullet id: {bullet.id}")
            seen.add(bullet.id)
        return self

    def get(self, bullet_id: str) -> Bullet | None:
        for bullet in self.bullets:
            if bullet.id == bullet_id:
                return bullet
        return None

    def active_bullets(self) -> list[Bullet]:
        return [b for b in self.bullets if b.is_active]


# --- Deltas -----------------------------------------------------------------


class NewBulletData(CamelModel):
    """Payload of an ``add`` delta."""

    content: str = ""
    category: str = "general"
    kind: BulletKind = "workflow_rule"
    scope: Scope = "global"
    scope_key: str | None = None
    workspace: str | None = None
    type: BulletType = "rule"
    tags: list[str] = Field(default_factory=list)
    reasoning: str | None = None
    search_pointer: str | None = None
    # Set by the validation gate when evidence is strong enough to skip draft
    state: BulletState | None = None
    # Pre-assigned id (used when a merge is decomposed into add + deprecate)
    id: str | None = None


class AddDelta(CamelModel):
    type: Literal["add"] = "add"
    bullet: NewBulletData
    reason: str = ""
    source_session: str = ""


class HelpfulDelta(CamelModel):
    type: Literal["helpful"] = "helpful"
    bullet_id: str
    source_session: str | None = None
    context: str | None = None
    reason: str | None = None


class HarmfulDelta(CamelModel):
    type: Literal["harmful"] = "harmful"
    bullet_id: str
    source_session: str | None = None
    context: str | None = None
    reason: HarmfulReason | None = None


class ReplaceDelta(CamelModel):
    type: Literal["replace"] = "replace"
    bullet_id: str
    new_content: str
    reason: str | None = None


class DeprecateDelta(CamelModel):
    type: Literal["deprecate"] = "deprecate"
    bullet_id: str
    reason: str
    replaced_by: str | None = None


class MergeDelta(CamelModel):
    type: Literal["merge"] = "merge"
    bullet_ids: list[str]
    merged_content: str
    reason: str | None = None


PlaybookDelta = Annotated[
    Union[AddDelta, HelpfulDelta, HarmfulDelta, ReplaceDelta, DeprecateDelta, MergeDelta],
    Field(discriminator="type"),
]

_DELTA_ADAPTER: TypeAdapter[PlaybookDelta] = TypeAdapter(PlaybookDelta)


def parse_delta(data: dict[str, Any]) -> PlaybookDelta:
    """Validate a raw mapping into the matching delta variant.

    Raises:
        pydantic.ValidationError: If the mapping is not a valid delta
    """
    return _DELTA_ADAPTER.validate_python(data)


def parse_delta_list(items: list[Any]) -> tuple[list[PlaybookDelta], list[str]]:
    """Validate raw deltas one by one.

    Returns the valid deltas in input order and one reason per item that was
    not an object, had an unknown type or failed validation.
    """
    deltas: list[PlaybookDelta] = []
    rejected: list[str] = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            rejected.append(f"delta {index}: not an object")
            continue
        try:
            deltas.append(parse_delta(raw))
        except ValidationError as e:
            rejected.append(f"delta {index} ({raw.get('type')}): {e.errors()[0]['msg']}")
    return deltas, rejected


# --- Reports ----------------------------------------------------------------


class ConflictReport(CamelModel):
    bullet_id: str
    existing_content: str
    new_content: str
    reason: str


class PromotionReport(CamelModel):
    bullet_id: str
    from_maturity: Maturity
    to_maturity: Maturity
    reason: str


class InversionReport(CamelModel):
    original_id: str
    original_content: str
    anti_pattern_id: str
    anti_pattern_content: str


class DecisionLogEntry(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    timestamp: UTCDateTime = Field(default_factory=now)
    phase: DecisionPhase
    action: DecisionAction
    reason: str
    bullet_id: str | None = None
    content: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class DecisionLog(CamelModel):
    """Append-only audit trail.

    Immutable: ``record`` and ``extend`` return a new log, so a log can be
    threaded through branching code and returned without shared mutation.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    entries: tuple[DecisionLogEntry, ...] = ()

    def record(
        self,
        phase: DecisionPhase,
        action: DecisionAction,
        reason: str,
        *,
        bullet_id: str | None = None,
        content: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> "DecisionLog":
        entry = DecisionLogEntry(
            phase=phase,
            action=action,
            reason=reason,
            bullet_id=bullet_id,
            content=truncate(content, 100) if content else None,
            details=details or {},
        )
        return DecisionLog(entries=(*self.entries, entry))

    def extend(self, other: "DecisionLog") -> "DecisionLog":
        return DecisionLog(entries=(*self.entries, *other.entries))

    def __len__(self) -> int:
        return len(self.entries)

    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]


class CurationResult(BaseModel):
    playbook: Playbook
    applied: int = 0
    skipped: int = 0
    conflicts: list[ConflictReport] = Field(default_factory=list)
    promotions: list[PromotionReport] = Field(default_factory=list)
    inversions: list[InversionReport] = Field(default_factory=list)
    pruned: int = 0
    pruned_ids: list[str] = Field(default_factory=list)
    decision_log: DecisionLog = Field(default_factory=DecisionLog)


# --- Validation -------------------------------------------------------------

Verdict = Literal["ACCEPT", "REJECT", "REFINE", "ACCEPT_WITH_CAUTION"]


class ValidatorVerdict(BaseModel):
    """What the LLM verdict collaborator returns."""

    verdict: Verdict
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    supporting_evidence: list[str] = Field(default_factory=list)
    contradicting_evidence: list[str] = Field(default_factory=list)
    refined_rule: str | None = None


class EvidenceGateResult(BaseModel):
    passed: bool
    reason: str
    suggested_state: BulletState | None = None
    session_count: int = 0
    success_sessions: int = 0
    failure_sessions: int = 0
    keywords: list[str] = Field(default_factory=list)
    search_failed: bool = False


class ValidationResult(BaseModel):
    valid: bool
    verdict: Verdict | None = None
    confidence: float = 0.0
    reason: str = ""
    refined_rule: str | None = None
    suggested_state: BulletState | None = None
    gate: EvidenceGateResult | None = None
    decision_log: DecisionLog = Field(default_factory=DecisionLog)


# --- Processing log ---------------------------------------------------------


class ProcessedEntry(BaseModel):
    session_path: str
    processed_at: UTCDateTime = Field(default_factory=now)
    diary_id: str | None = None
    deltas_proposed: int = 0
    deltas_applied: int = 0
