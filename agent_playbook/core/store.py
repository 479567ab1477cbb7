# agent_playbook/core/store.py
import json
import logging
import os
import shutil
import subprocess
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from agent_playbook.utils import log_event, now

from .config import PlaybookConfig
from .schema import Bullet, DeprecatedPattern, Playbook

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yaml", ".yml")


class PlaybookWriteError(Exception):
    """Raised when a playbook cannot be written to disk."""

    pass


def create_empty_playbook(name: str = "playbook", description: str = "") -> Playbook:
    return Playbook(name=name, description=description)


def _is_yaml(path: Path) -> bool:
    return path.suffix.lower() in YAML_SUFFIXES


def serialize_playbook(playbook: Playbook, path: Path) -> str:
    """Render a playbook in the format implied by the path's extension."""
    document = playbook.to_document()
    if _is_yaml(path):
        return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def parse_playbook(text: str, path: Path) -> Playbook:
    """Parse and validate a serialized playbook.

    Raises:
        ValueError: If the document is not a mapping or fails schema validation
    """
    data: Any = yaml.safe_load(text) if _is_yaml(path) else json.loads(text)
    if data is None:
        return create_empty_playbook()
    if not isinstance(data, dict):
        raise ValueError("playbook document must be a mapping")
    return Playbook.model_validate(data)


def _backup_corrupt(path: Path) -> Path:
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
    backup = path.with_name(f"{path.name}.backup.{stamp}")
    shutil.copy2(path, backup)
    return backup


def load_playbook(path: str | os.PathLike) -> Playbook:
    """Load a playbook from disk.

    A missing or empty file yields an empty playbook. A file that fails to
    parse or validate is copied to ``<path>.backup.<timestamp>`` and an empty
    playbook is returned in its place.

    Args:
        path: Location of the playbook document

    Returns:
        The loaded (or freshly initialized) playbook
    """
    path = Path(path).expanduser()
    if not path.exists():
        logger.debug(f"No playbook at {path}; starting empty")
        return create_empty_playbook()

    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return create_empty_playbook()

    try:
        return parse_playbook(text, path)
    except (yaml.YAMLError, json.JSONDecodeError, ValidationError, ValueError) as e:
        backup = _backup_corrupt(path)
        logger.error(f"Playbook at {path} is corrupt ({e}); backed up to {backup}")
        log_event("playbook_corrupt", {"path": str(path), "backup": str(backup), "error": str(e)})
        return create_empty_playbook()


def save_playbook(playbook: Playbook, path: str | os.PathLike) -> None:
    """Atomically write a playbook: temp file in the same directory, then rename.

    Raises:
        PlaybookWriteError: If the write or rename fails
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    content = serialize_playbook(playbook, path)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise PlaybookWriteError(f"Failed to write playbook to {path}: {e}") from e

    log_event("playbook_saved", {"path": str(path), "bullets": len(playbook.bullets)})


def find_bullet(playbook: Playbook, bullet_id: str) -> Bullet | None:
    return playbook.get(bullet_id)


def add_bullet(playbook: Playbook, bullet: Bullet) -> Bullet:
    """Append a bullet, refusing duplicate ids."""
    if playbook.get(bullet.id) is not None:
        raise ValueError(f"Bullet {bullet.id} already exists")
    playbook.bullets.append(bullet)
    return bullet


def deprecate_bullet(
    playbook: Playbook, bullet_id: str, reason: str, replaced_by: str | None = None
) -> bool:
    """Mark a bullet deprecated. Returns False if the id is unknown."""
    bullet = playbook.get(bullet_id)
    if bullet is None:
        return False
    bullet.mark_deprecated(reason, replaced_by)
    return True


def undeprecate_bullet(playbook: Playbook, bullet_id: str) -> bool:
    """Restore a deprecated bullet to active. Returns False if unknown or not deprecated.

    Maturity drops back to ``candidate`` so the rule has to earn trust again;
    feedback history is kept.
    """
    bullet = playbook.get(bullet_id)
    if bullet is None or not bullet.deprecated:
        return False
    bullet.deprecated = False
    bullet.deprecated_at = None
    bullet.deprecation_reason = None
    bullet.state = "active"
    if bullet.maturity == "deprecated":
        bullet.maturity = "candidate"
    bullet.updated_at = now()
    return True


def remove_bullet(playbook: Playbook, bullet_id: str) -> Bullet | None:
    """Hard-delete a bullet. Administrative only; curation never calls this path."""
    bullet = playbook.get(bullet_id)
    if bullet is None:
        return None
    playbook.bullets = [b for b in playbook.bullets if b.id != bullet_id]
    return bullet


def undo_last_feedback(playbook: Playbook, bullet_id: str) -> bool:
    bullet = playbook.get(bullet_id)
    if bullet is None:
        return False
    return bullet.pop_feedback() is not None


def set_pinned(playbook: Playbook, bullet_id: str, pinned: bool, reason: str | None = None) -> bool:
    bullet = playbook.get(bullet_id)
    if bullet is None:
        return False
    bullet.pinned = pinned
    bullet.pinned_reason = reason if pinned else None
    bullet.updated_at = now()
    return True


def add_deprecated_pattern(
    playbook: Playbook, pattern: str, reason: str, replacement: str | None = None
) -> None:
    if any(p.pattern == pattern for p in playbook.deprecated_patterns):
        return
    playbook.deprecated_patterns.append(
        DeprecatedPattern(pattern=pattern, reason=reason, replacement=replacement)
    )


def merge_playbooks(global_playbook: Playbook, repo_playbook: Playbook | None) -> Playbook:
    """Build the read-only merged view used for duplicate and conflict lookups.

    Repo bullets shadow global bullets with the same id.
    """
    if repo_playbook is None:
        return global_playbook.model_copy(deep=True)

    repo_ids = {b.id for b in repo_playbook.bullets}
    bullets = [b for b in global_playbook.bullets if b.id not in repo_ids]
    bullets.extend(repo_playbook.bullets)
    return Playbook(
        name="merged",
        description="Merged global and repo playbooks",
        metadata=global_playbook.metadata.model_copy(),
        deprecated_patterns=[
            *global_playbook.deprecated_patterns,
            *repo_playbook.deprecated_patterns,
        ],
        bullets=[b.model_copy(deep=True) for b in bullets],
    )


def resolve_repo_playbook_path(
    config: PlaybookConfig, cwd: str | os.PathLike | None = None
) -> Path | None:
    """Locate the repo-scoped playbook for the git repository containing ``cwd``.

    Returns None outside a git repository.
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"git not available for repo playbook lookup: {e}")
        return None
    if result.returncode != 0:
        return None
    return Path(result.stdout.strip()) / config.paths.repo_playbook_dir / "playbook.yaml"


def load_merged_playbook(config: PlaybookConfig, repo_path: Path | None = None) -> Playbook:
    """Unlocked merged read for context and display; may be slightly stale."""
    global_playbook = load_playbook(config.global_playbook_path)
    repo_playbook = load_playbook(repo_path) if repo_path is not None else None
    return merge_playbooks(global_playbook, repo_playbook)
