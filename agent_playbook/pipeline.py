# agent_playbook/pipeline.py
"""
Reflection pipeline orchestration.

Loop: Sessions → Reflector → Deltas → Validation → Curator → Locked save → Processed log

Reflection and validation run against an unlocked snapshot of the merged
playbook, which can be slow (LLM calls). The playbook locks are only held for
the short reload → curate → save window at the end, so concurrent runs never
lose each other's writes.
"""
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from agent_playbook.core.config import PlaybookConfig
from agent_playbook.core.lock import file_lock, with_locks
from agent_playbook.core.schema import (
    AddDelta,
    CurationResult,
    DecisionLog,
    DeprecateDelta,
    MergeDelta,
    NewBulletData,
    Playbook,
    PlaybookDelta,
    ProcessedEntry,
)
from agent_playbook.core.store import load_merged_playbook, load_playbook, merge_playbooks, save_playbook
from agent_playbook.core.tracking import ProcessedLog, processed_log_path
from agent_playbook.curator.curator import curate_playbook, screen_new_content
from agent_playbook.reflector import Reflector, format_history
from agent_playbook.search.client import EvidenceSearch, safe_search
from agent_playbook.utils import (
    extract_keywords,
    generate_bullet_id,
    generate_diary_id,
    hash_content,
    jaccard_similarity,
    log_event,
    now,
)
from agent_playbook.validation.validator import VerdictValidator, validate_delta

logger = logging.getLogger(__name__)

MERGED_CATEGORY = "merged"
MERGED_SOURCE = "merged-operation"
HISTORY_SEARCH_LIMIT = 5


@dataclass
class SessionInput:
    """A session to reflect on: its transcript path and rendered diary."""

    session_path: str
    diary_text: str
    diary_id: str | None = None


@dataclass
class CommitResult:
    global_result: CurationResult | None = None
    repo_result: CurationResult | None = None
    # Deltas dropped by validation before curation
    rejected: int = 0

    @property
    def applied(self) -> int:
        return sum(r.applied for r in (self.global_result, self.repo_result) if r is not None)

    @property
    def skipped(self) -> int:
        return sum(r.skipped for r in (self.global_result, self.repo_result) if r is not None) + self.rejected


@dataclass
class ReflectionOutcome:
    """Result of one pipeline run."""

    sessions_processed: int = 0
    sessions_skipped: int = 0
    deltas_generated: int = 0
    deltas_accepted: int = 0
    deltas_rejected: int = 0
    pending_deltas: list[PlaybookDelta] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)
    aborted: bool = False
    dry_run: bool = False
    commit: CommitResult | None = None
    decision_log: DecisionLog = field(default_factory=DecisionLog)


def _find_merge_target(content: str, context: Playbook, threshold: float):
    """Return (bullet, exact) for the bullet a merge result would duplicate."""
    content_hash = hash_content(content)
    for bullet in context.bullets:
        if hash_content(bullet.content) == content_hash:
            return bullet, True

    best, best_score = None, 0.0
    for bullet in context.active_bullets():
        score = jaccard_similarity(content, bullet.content)
        if score > best_score:
            best, best_score = bullet, score
    if best is not None and best_score >= threshold:
        return best, False
    return None, False


def decompose_merges(
    deltas: list[PlaybookDelta], context: Playbook, config: PlaybookConfig
) -> list[PlaybookDelta]:
    """Rewrite ``merge`` deltas into ``add`` + ``deprecate`` deltas.

    A merge whose result already exists as an active bullet only deprecates
    the other merged ids into that bullet. A merge whose result matches a
    deprecated bullet, is too short or hits a tombstone is dropped, so
    deprecated content is never resurrected. The new bullet gets a
    pre-assigned id so the deprecations can point at it before it exists; it
    is routed to the global playbook like any new rule. If curation still
    skips the add, the curator also skips deprecations pointing at it.
    """
    expanded: list[PlaybookDelta] = []
    threshold = config.curation.dedup_similarity_threshold
    for delta in deltas:
        if not isinstance(delta, MergeDelta):
            expanded.append(delta)
            continue

        originals = [context.get(bullet_id) for bullet_id in delta.bullet_ids]
        if len(originals) < 2 or any(b is None for b in originals):
            logger.warning(f"Skipping merge of {delta.bullet_ids}: needs at least two existing bullets")
            continue

        reason = delta.reason or "Merged overlapping rules"
        existing, exact = _find_merge_target(delta.merged_content, context, threshold)
        if existing is not None and exact and not existing.is_active:
            logger.info(f"Skipping merge into deprecated content ({existing.id})")
            continue
        if existing is not None and existing.is_active:
            for bullet in originals:
                if bullet.id != existing.id:
                    expanded.append(
                        DeprecateDelta(
                            bullet_id=bullet.id,
                            reason=f"Merged into {existing.id}: {reason}",
                            replaced_by=existing.id,
                        )
                    )
            continue

        blocked = screen_new_content(delta.merged_content, config, context)
        if blocked is not None:
            logger.info(f"Skipping merge of {delta.bullet_ids}: {blocked}")
            continue

        merged_id = generate_bullet_id()
        tags: list[str] = []
        for bullet in originals:
            tags.extend(t for t in bullet.tags if t not in tags)
        expanded.append(
            AddDelta(
                bullet=NewBulletData(
                    id=merged_id,
                    content=delta.merged_content,
                    category=MERGED_CATEGORY,
                    tags=tags,
                    reasoning=f"Merged from {', '.join(delta.bullet_ids)}",
                ),
                reason=reason,
                source_session=MERGED_SOURCE,
            )
        )
        for bullet in originals:
            expanded.append(
                DeprecateDelta(bullet_id=bullet.id, reason=f"Merged into {merged_id}: {reason}", replaced_by=merged_id)
            )
    return expanded


def route_deltas(
    deltas: list[PlaybookDelta], repo_playbook: Playbook | None
) -> tuple[list[PlaybookDelta], list[PlaybookDelta]]:
    """Split deltas into (global, repo) by which playbook owns the bullet id.

    New rules always go to the global playbook.
    """
    global_deltas: list[PlaybookDelta] = []
    repo_deltas: list[PlaybookDelta] = []
    for delta in deltas:
        bullet_id = getattr(delta, "bullet_id", None)
        if repo_playbook is not None and bullet_id is not None and repo_playbook.get(bullet_id) is not None:
            repo_deltas.append(delta)
        else:
            global_deltas.append(delta)
    return global_deltas, repo_deltas


def _existing_repo_path(repo_path: str | Path | None) -> Path | None:
    if repo_path is None:
        return None
    path = Path(repo_path).expanduser()
    return path if path.exists() else None


def commit_deltas(
    config: PlaybookConfig,
    deltas: list[PlaybookDelta],
    repo_path: str | Path | None = None,
    sessions_processed: int = 0,
) -> CommitResult:
    """Reload, curate and save the global (and repo) playbook under lock.

    Locks are taken global first, then repo. The repo playbook only takes part
    when its file already exists. A non-zero ``sessions_processed`` also
    stamps the global playbook's reflection metadata.
    """
    global_path = config.global_playbook_path
    repo = _existing_repo_path(repo_path)

    def operation() -> CommitResult:
        global_playbook = load_playbook(global_path)
        repo_playbook = load_playbook(repo) if repo is not None else None
        context = merge_playbooks(global_playbook, repo_playbook)

        expanded = decompose_merges(deltas, context, config)
        global_deltas, repo_deltas = route_deltas(expanded, repo_playbook)

        result = CommitResult()
        if global_deltas:
            result.global_result = curate_playbook(global_playbook, global_deltas, config, context=context)
        if sessions_processed:
            metadata = global_playbook.metadata
            metadata.last_reflection = now()
            metadata.total_reflections += 1
            metadata.total_sessions_processed += sessions_processed
        if global_deltas or sessions_processed:
            save_playbook(global_playbook, global_path)
        if repo_playbook is not None and repo_deltas:
            context = merge_playbooks(global_playbook, repo_playbook)
            result.repo_result = curate_playbook(repo_playbook, repo_deltas, config, context=context)
            save_playbook(repo_playbook, repo)
        return result

    return with_locks(
        global_path,
        repo,
        operation,
        max_retries=config.lock.max_retries,
        retry_delay=config.lock.retry_delay,
    )


def _validate_all(
    deltas: list[PlaybookDelta],
    config: PlaybookConfig,
    search: EvidenceSearch | None,
    validator: VerdictValidator | None,
) -> tuple[list[PlaybookDelta], int, DecisionLog]:
    """Run each delta through validation; returns (accepted, rejected_count, log)."""
    accepted: list[PlaybookDelta] = []
    rejected = 0
    log = DecisionLog()
    for delta in deltas:
        result = validate_delta(delta, config, search=search, validator=validator)
        log = log.extend(result.decision_log)
        if not result.valid:
            rejected += 1
            continue
        if isinstance(delta, AddDelta):
            if result.refined_rule:
                delta.bullet.content = result.refined_rule
            if result.suggested_state == "active":
                delta.bullet.state = "active"
        accepted.append(delta)
    return accepted, rejected, log


def apply_deltas(
    config: PlaybookConfig,
    deltas: list[PlaybookDelta],
    validate: bool = False,
    search: EvidenceSearch | None = None,
    validator: VerdictValidator | None = None,
    repo_path: str | Path | None = None,
) -> CommitResult:
    """Manual edit path: optionally validate, then commit with the usual routing and locking."""
    rejected = 0
    if validate:
        deltas, rejected, _ = _validate_all(deltas, config, search, validator)
        if rejected:
            logger.info(f"Validation rejected {rejected} deltas")
    result = commit_deltas(config, deltas, repo_path=repo_path)
    result.rejected = rejected
    return result


class ReflectionPipeline:
    """Reflect on new sessions and fold the accepted deltas into the playbooks."""

    def __init__(
        self,
        config: PlaybookConfig,
        reflector: Reflector | None = None,
        search: EvidenceSearch | None = None,
        validator: VerdictValidator | None = None,
        repo_path: str | Path | None = None,
        workspace: str | None = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Configuration (paths, thresholds, reflection limits)
            reflector: Delta producer. If None, one is built from config.
            search: Evidence search used for history and validation
            validator: Verdict collaborator for ambiguous evidence
            repo_path: Repo-scoped playbook file, if any
            workspace: Workspace whose processed log is used
        """
        self.config = config
        self.reflector = reflector or Reflector(
            max_iterations=config.reflection.max_iterations,
            max_deltas=config.reflection.max_deltas,
            temperature=config.llm.temperature,
        )
        self.search = search
        self.validator = validator
        self.repo_path = repo_path
        self.log_path = processed_log_path(config.paths.reflections_dir, workspace)

    def _history_for(self, diary_text: str) -> str:
        if self.search is None:
            return ""
        keywords = extract_keywords(diary_text)
        if not keywords:
            return ""
        outcome = safe_search(
            self.search,
            " ".join(keywords),
            limit=HISTORY_SEARCH_LIMIT,
            days=self.config.validation.lookback_days,
        )
        return format_history(outcome.hits)

    def run(
        self,
        sessions: list[SessionInput],
        abort: threading.Event | None = None,
        dry_run: bool = False,
    ) -> ReflectionOutcome:
        """Process every not-yet-processed session.

        Sessions are handled strictly in order. Errors in one session are
        recorded and do not stop the rest. Setting ``abort`` stops the run
        before the next session; already reflected sessions are still saved.

        Returns:
            ReflectionOutcome with counts, per-session errors and the commit result
        """
        outcome = ReflectionOutcome(dry_run=dry_run)
        lock_cfg = self.config.lock
        orchestrator_lock = f"{self.log_path}.orchestrator"

        with file_lock(orchestrator_lock, max_retries=lock_cfg.max_retries, retry_delay=lock_cfg.retry_delay):
            processed = ProcessedLog(self.log_path)
            processed.load()
            snapshot = load_merged_playbook(self.config, _existing_repo_path(self.repo_path))

            pending: list[ProcessedEntry] = []
            accepted_all: list[PlaybookDelta] = []

            for session in sessions:
                if abort is not None and abort.is_set():
                    logger.info("Reflection aborted; committing sessions processed so far")
                    outcome.aborted = True
                    break
                if processed.has(session.session_path):
                    outcome.sessions_skipped += 1
                    continue

                try:
                    reflection = self.reflector.reflect_on_session(
                        session.diary_text,
                        snapshot,
                        session_path=session.session_path,
                        evidence_text=self._history_for(session.diary_text),
                    )
                    accepted, rejected, validation_log = _validate_all(
                        reflection.deltas, self.config, self.search, self.validator
                    )
                except Exception as e:
                    logger.error(f"Reflection failed for {session.session_path}: {e}")
                    outcome.errors.append((session.session_path, str(e)))
                    continue

                outcome.decision_log = outcome.decision_log.extend(reflection.decision_log).extend(validation_log)
                outcome.sessions_processed += 1
                outcome.deltas_generated += len(reflection.deltas)
                outcome.deltas_accepted += len(accepted)
                outcome.deltas_rejected += rejected
                accepted_all.extend(accepted)
                pending.append(
                    ProcessedEntry(
                        session_path=session.session_path,
                        diary_id=session.diary_id or generate_diary_id(),
                        deltas_proposed=len(reflection.deltas),
                        deltas_applied=len(accepted),
                    )
                )

            outcome.pending_deltas = accepted_all
            if dry_run:
                return outcome

            if pending:
                outcome.commit = commit_deltas(
                    self.config,
                    accepted_all,
                    repo_path=self.repo_path,
                    sessions_processed=len(pending),
                )
            # Sessions with no deltas are still recorded so they are not re-reflected
            processed.append_batch(pending, max_retries=lock_cfg.max_retries, retry_delay=lock_cfg.retry_delay)

        log_event(
            "reflection_run",
            {
                "sessions_processed": outcome.sessions_processed,
                "sessions_skipped": outcome.sessions_skipped,
                "deltas_generated": outcome.deltas_generated,
                "deltas_accepted": outcome.deltas_accepted,
                "errors": len(outcome.errors),
                "aborted": outcome.aborted,
            },
        )
        return outcome
