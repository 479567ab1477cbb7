# agent_playbook/core/lock.py
"""Cross-process advisory locks built on exclusive lock-file creation.

A lock for ``<target>`` is the file ``<target>.lock`` holding the owner's PID.
Acquisition polls with a fixed delay and gives up after a bounded number of
attempts. A lock file left behind by a crashed process is never reclaimed.
"""

import logging
import os
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import TypeVar

from agent_playbook.utils import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 20
DEFAULT_RETRY_DELAY = 0.1

# Lock files held by this process, for shutdown cleanup
_active_locks: set[Path] = set()
_active_guard = threading.Lock()


class LockAcquisitionError(Exception):
    """Raised when a lock cannot be acquired within the retry budget."""

    pass


def lock_path_for(target: str | os.PathLike) -> Path:
    target = Path(target).expanduser()
    return target.with_name(target.name + ".lock")


def _try_create(lock_path: Path) -> bool:
    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w") as f:
        f.write(str(os.getpid()))
    return True


def _release(lock_path: Path) -> None:
    with _active_guard:
        _active_locks.discard(lock_path)
    try:
        holder = lock_path.read_text().strip()
    except FileNotFoundError:
        logger.warning(f"Lock file {lock_path} disappeared before release")
        return
    if holder != str(os.getpid()):
        logger.warning(f"Lock file {lock_path} now held by pid {holder}; leaving it in place")
        return
    lock_path.unlink(missing_ok=True)


@contextmanager
def file_lock(
    target: str | os.PathLike,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> Iterator[Path]:
    """Hold the exclusive lock for ``target`` for the duration of the block.

    Args:
        target: Path of the resource being protected (not the lock file)
        max_retries: Attempts before giving up
        retry_delay: Seconds to sleep between attempts

    Yields:
        Path of the lock file

    Raises:
        LockAcquisitionError: If the lock is still held after ``max_retries`` attempts
    """
    lock_path = lock_path_for(target)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    for attempt in range(max_retries):
        if _try_create(lock_path):
            break
        if attempt < max_retries - 1:
            time.sleep(retry_delay)
    else:
        raise LockAcquisitionError(
            f"Could not acquire lock for {target} after {max_retries} attempts"
        )

    with _active_guard:
        _active_locks.add(lock_path)
    log_event("lock_acquired", {"lock_path": str(lock_path), "pid": os.getpid()})
    try:
        yield lock_path
    finally:
        _release(lock_path)


def with_lock(
    target: str | os.PathLike,
    operation: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> T:
    """Run ``operation`` while holding the lock for ``target`` and return its result."""
    with file_lock(target, max_retries=max_retries, retry_delay=retry_delay):
        return operation()


def with_locks(
    global_path: str | os.PathLike,
    repo_path: str | os.PathLike | None,
    operation: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> T:
    """Run ``operation`` holding the global lock and, if given, the repo lock.

    The global lock is always taken first so two processes needing both
    locks cannot deadlock.
    """
    targets: Sequence[str | os.PathLike] = [global_path]
    if repo_path is not None and Path(repo_path).expanduser() != Path(global_path).expanduser():
        targets = [global_path, repo_path]

    with ExitStack() as stack:
        for target in targets:
            stack.enter_context(file_lock(target, max_retries=max_retries, retry_delay=retry_delay))
        return operation()


def active_locks() -> list[Path]:
    with _active_guard:
        return sorted(_active_locks)


def release_all_locks() -> int:
    """Remove every lock file this process still holds. Returns how many were released."""
    released = 0
    for lock_path in active_locks():
        _release(lock_path)
        released += 1
    return released
