# agent_playbook/manage.py
"""Administrative playbook edits: feedback, undo, restore, forget and pin.

Each operation is a locked read-modify-write against whichever playbook
(repo first, then global) owns the bullet id.
"""
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from agent_playbook.core.config import PlaybookConfig
from agent_playbook.core.lock import with_locks
from agent_playbook.core.schema import (
    Bullet,
    CurationResult,
    FeedbackType,
    HarmfulDelta,
    HarmfulReason,
    HelpfulDelta,
    Playbook,
)
from agent_playbook.core.store import (
    add_deprecated_pattern,
    load_playbook,
    merge_playbooks,
    remove_bullet,
    save_playbook,
    set_pinned,
    undeprecate_bullet,
    undo_last_feedback,
)
from agent_playbook.curator.curator import curate_playbook
from agent_playbook.utils import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BulletNotFoundError(LookupError):
    """Raised when no playbook contains the requested bullet id."""

    pass


def _with_owner(
    config: PlaybookConfig,
    bullet_id: str,
    repo_path: str | Path | None,
    mutate: Callable[[Playbook, Playbook], T],
) -> T:
    global_path = config.global_playbook_path
    repo = Path(repo_path).expanduser() if repo_path is not None else None
    if repo is not None and not repo.exists():
        repo = None

    def operation() -> T:
        global_playbook = load_playbook(global_path)
        repo_playbook = load_playbook(repo) if repo is not None else None
        if repo_playbook is not None and repo_playbook.get(bullet_id) is not None:
            owner, owner_path = repo_playbook, repo
        elif global_playbook.get(bullet_id) is not None:
            owner, owner_path = global_playbook, global_path
        else:
            raise BulletNotFoundError(f"Bullet not found: {bullet_id}")

        context = merge_playbooks(global_playbook, repo_playbook)
        result = mutate(owner, context)
        save_playbook(owner, owner_path)
        return result

    return with_locks(
        global_path,
        repo,
        operation,
        max_retries=config.lock.max_retries,
        retry_delay=config.lock.retry_delay,
    )


def record_feedback(
    config: PlaybookConfig,
    bullet_id: str,
    feedback_type: FeedbackType,
    session_path: str | None = None,
    reason: HarmfulReason | None = None,
    context: str | None = None,
    repo_path: str | Path | None = None,
) -> CurationResult:
    """Record one helpful/harmful event and re-run maturity for the bullet.

    Goes through the curator, so harmful feedback can deprecate and invert
    the rule exactly as reflected feedback would.
    """
    if feedback_type == "helpful":
        delta = HelpfulDelta(bullet_id=bullet_id, source_session=session_path, context=context)
    else:
        delta = HarmfulDelta(bullet_id=bullet_id, source_session=session_path, context=context, reason=reason)

    def mutate(owner: Playbook, merged: Playbook) -> CurationResult:
        return curate_playbook(owner, [delta], config, context=merged)

    return _with_owner(config, bullet_id, repo_path, mutate)


def undo_feedback(
    config: PlaybookConfig, bullet_id: str, repo_path: str | Path | None = None
) -> bool:
    """Remove the most recent feedback event. Returns False if there was none."""

    def mutate(owner: Playbook, merged: Playbook) -> bool:
        return undo_last_feedback(owner, bullet_id)

    undone = _with_owner(config, bullet_id, repo_path, mutate)
    log_event("feedback_undone", {"bullet_id": bullet_id, "undone": undone})
    return undone


def restore_bullet(
    config: PlaybookConfig, bullet_id: str, repo_path: str | Path | None = None
) -> bool:
    """Un-deprecate a bullet. Returns False if it was not deprecated."""

    def mutate(owner: Playbook, merged: Playbook) -> bool:
        return undeprecate_bullet(owner, bullet_id)

    restored = _with_owner(config, bullet_id, repo_path, mutate)
    if restored:
        logger.info(f"Restored deprecated bullet {bullet_id}")
    log_event("bullet_restored", {"bullet_id": bullet_id, "restored": restored})
    return restored


def forget_bullet(
    config: PlaybookConfig,
    bullet_id: str,
    reason: str = "Forgotten by user",
    repo_path: str | Path | None = None,
) -> Bullet:
    """Hard-delete a bullet and tombstone its content so it is not re-learned."""

    def mutate(owner: Playbook, merged: Playbook) -> Bullet:
        removed = remove_bullet(owner, bullet_id)
        add_deprecated_pattern(owner, removed.content, reason)
        return removed

    removed = _with_owner(config, bullet_id, repo_path, mutate)
    logger.info(f"Forgot bullet {bullet_id}")
    log_event("bullet_forgotten", {"bullet_id": bullet_id, "reason": reason})
    return removed


def pin_bullet(
    config: PlaybookConfig,
    bullet_id: str,
    pinned: bool = True,
    reason: str | None = None,
    repo_path: str | Path | None = None,
) -> None:
    """Pin (or unpin) a bullet. Pinned bullets are never demoted, inverted or pruned."""

    def mutate(owner: Playbook, merged: Playbook) -> bool:
        return set_pinned(owner, bullet_id, pinned, reason)

    _with_owner(config, bullet_id, repo_path, mutate)
    log_event("bullet_pinned", {"bullet_id": bullet_id, "pinned": pinned})
