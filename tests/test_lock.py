import os
import threading
from contextlib import contextmanager

import pytest

from agent_playbook.core import lock as lock_module
from agent_playbook.core.lock import (
    LockAcquisitionError,
    active_locks,
    file_lock,
    lock_path_for,
    release_all_locks,
    with_lock,
    with_locks,
)


def test_lock_path_for(tmp_path):
    assert lock_path_for(tmp_path / "playbook.yaml") == tmp_path / "playbook.yaml.lock"


def test_lock_file_holds_pid_and_is_removed(tmp_path):
    target = tmp_path / "playbook.yaml"
    with file_lock(target) as lock_path:
        assert lock_path.read_text() == str(os.getpid())
        assert lock_path in active_locks()
    assert not lock_path.exists()
    assert lock_path not in active_locks()


def test_held_lock_fails_fast(tmp_path):
    target = tmp_path / "playbook.yaml"
    with file_lock(target):
        with pytest.raises(LockAcquisitionError, match="after 3 attempts"):
            with file_lock(target, max_retries=3, retry_delay=0.0):
                pass


def test_lock_released_on_exception(tmp_path):
    target = tmp_path / "playbook.yaml"
    with pytest.raises(RuntimeError):
        with file_lock(target):
            raise RuntimeError("boom")
    assert not lock_path_for(target).exists()


def test_foreign_lock_file_is_left_alone(tmp_path):
    target = tmp_path / "playbook.yaml"
    with file_lock(target) as lock_path:
        lock_path.write_text("999999")
    assert lock_path.read_text() == "999999"


def test_with_lock_returns_result(tmp_path):
    assert with_lock(tmp_path / "playbook.yaml", lambda: 42) == 42


def test_with_locks_takes_global_first(tmp_path, monkeypatch):
    order = []

    @contextmanager
    def recording_lock(target, max_retries=20, retry_delay=0.1):
        order.append(target)
        yield target

    monkeypatch.setattr(lock_module, "file_lock", recording_lock)
    global_path = tmp_path / "global.yaml"
    repo_path = tmp_path / "repo.yaml"

    assert with_locks(global_path, repo_path, lambda: "done") == "done"
    assert order == [global_path, repo_path]


def test_with_locks_same_path_locks_once(tmp_path):
    path = tmp_path / "playbook.yaml"
    assert with_locks(path, path, lambda: "ok", max_retries=2, retry_delay=0.0) == "ok"


def test_with_locks_without_repo(tmp_path):
    path = tmp_path / "playbook.yaml"
    assert with_locks(path, None, lambda: lock_path_for(path).exists())


def test_concurrent_read_modify_write(tmp_path):
    counter = tmp_path / "counter.txt"
    counter.write_text("0")

    def increment():
        for _ in range(5):
            def bump():
                value = int(counter.read_text())
                counter.write_text(str(value + 1))

            with_lock(counter, bump, max_retries=1000, retry_delay=0.001)

    threads = [threading.Thread(target=increment) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counter.read_text() == "20"


def test_release_all_locks(tmp_path):
    target = tmp_path / "playbook.yaml"
    with file_lock(target) as lock_path:
        assert release_all_locks() == 1
        assert not lock_path.exists()
    assert active_locks() == []
