# tests/conftest.py
"""Pytest configuration and shared fixtures."""

import os
from datetime import timedelta

import pytest

# Set test environment before any agent_playbook imports
# Only set if not explicitly overridden by a specific test
# This ensures the mock LLM provider is used for most tests
if "CASS_MEMORY_LLM_PROVIDER" not in os.environ:
    os.environ["CASS_MEMORY_LLM_PROVIDER"] = "mock"

from agent_playbook.core.config import PlaybookConfig, reset_config  # noqa: E402
from agent_playbook.core.schema import Bullet, FeedbackEvent  # noqa: E402
from agent_playbook.utils import now  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep ~/.cass-memory and the cached config out of the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    reset_config()
    yield home
    reset_config()


@pytest.fixture
def config(tmp_path) -> PlaybookConfig:
    cfg = PlaybookConfig()
    cfg.paths.playbook_path = str(tmp_path / "global" / "playbook.yaml")
    cfg.paths.reflections_dir = str(tmp_path / "reflections")
    cfg.llm.provider = "mock"
    cfg.lock.max_retries = 5
    cfg.lock.retry_delay = 0.01
    return cfg


def feedback(kind: str, count: int, days_ago: float = 0.0, prefix: str = "s") -> list[FeedbackEvent]:
    stamp = now() - timedelta(days=days_ago)
    return [
        FeedbackEvent(type=kind, timestamp=stamp, session_path=f"/sessions/{prefix}-{kind}-{i}.jsonl")
        for i in range(count)
    ]


def make_bullet(content: str, helpful: int = 0, harmful: int = 0, **kwargs) -> Bullet:
    kwargs.setdefault("state", "active")
    events = feedback("helpful", helpful) + feedback("harmful", harmful)
    return Bullet(content=content, feedback_events=events, **kwargs)
