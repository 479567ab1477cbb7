# agent_playbook/core/tracking.py
"""Append-only record of which sessions have already been reflected on."""

import hashlib
import logging
import os
from datetime import datetime
from pathlib import Path

from .lock import file_lock
from .schema import ProcessedEntry, ensure_utc

logger = logging.getLogger(__name__)

HEADER = "# id\tsessionPath\tprocessedAt\tdeltasProposed\tdeltasApplied"


def processed_log_path(reflections_dir: str | os.PathLike, workspace: str | None = None) -> Path:
    """Per-workspace log location; the global log is used without a workspace."""
    base = Path(reflections_dir).expanduser()
    if not workspace:
        return base / "global.processed.log"
    resolved = str(Path(workspace).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:8]
    return base / f"ws-{digest}.processed.log"


def _parse_line(line: str) -> ProcessedEntry | None:
    parts = line.split("\t")
    if len(parts) < 2 or not parts[1]:
        return None
    diary_id, session_path = parts[0], parts[1]
    processed_at = None
    if len(parts) > 2 and parts[2]:
        try:
            processed_at = ensure_utc(datetime.fromisoformat(parts[2]))
        except ValueError:
            processed_at = None
    try:
        proposed = int(parts[3]) if len(parts) > 3 else 0
        applied = int(parts[4]) if len(parts) > 4 else 0
    except ValueError:
        proposed, applied = 0, 0
    entry = ProcessedEntry(
        session_path=session_path,
        diary_id=None if diary_id == "-" else diary_id,
        deltas_proposed=proposed,
        deltas_applied=applied,
    )
    if processed_at is not None:
        entry.processed_at = processed_at
    return entry


def _format_line(entry: ProcessedEntry) -> str:
    return "\t".join(
        [
            entry.diary_id or "-",
            entry.session_path,
            entry.processed_at.isoformat(),
            str(entry.deltas_proposed),
            str(entry.deltas_applied),
        ]
    )


class ProcessedLog:
    """Tab-separated log of processed session paths.

    Blank, comment and malformed lines are skipped on load so a damaged log
    only costs re-processing, never a crash.
    """

    def __init__(self, log_path: str | os.PathLike):
        self.log_path = Path(log_path).expanduser()
        self._entries: dict[str, ProcessedEntry] = {}

    def load(self) -> None:
        self._entries.clear()
        if not self.log_path.exists():
            return
        for line in self.log_path.read_text(encoding="utf-8").splitlines():
            if not line.strip() or line.startswith("#"):
                continue
            entry = _parse_line(line)
            if entry is None:
                logger.debug(f"Skipping malformed processed-log line: {line!r}")
                continue
            self._entries[entry.session_path] = entry

    def has(self, session_path: str) -> bool:
        return session_path in self._entries

    def processed_paths(self) -> set[str]:
        return set(self._entries)

    def entries(self) -> list[ProcessedEntry]:
        return list(self._entries.values())

    def append_batch(
        self,
        entries: list[ProcessedEntry],
        max_retries: int = 20,
        retry_delay: float = 0.1,
    ) -> None:
        """Append entries under the log's own lock."""
        if not entries:
            return
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with file_lock(self.log_path, max_retries=max_retries, retry_delay=retry_delay):
            new_file = not self.log_path.exists() or self.log_path.stat().st_size == 0
            with open(self.log_path, "a", encoding="utf-8") as f:
                if new_file:
                    f.write(HEADER + "\n")
                for entry in entries:
                    f.write(_format_line(entry) + "\n")
        for entry in entries:
            self._entries[entry.session_path] = entry
