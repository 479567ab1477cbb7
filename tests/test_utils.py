import json
import logging

from agent_playbook.utils import (
    extract_agent_from_path,
    extract_keywords,
    generate_bullet_id,
    generate_diary_id,
    hash_content,
    jaccard_similarity,
    log_event,
    normalize_text,
    setup_logging,
    tokenize,
    truncate,
)


def test_generate_bullet_id():
    bullet_id = generate_bullet_id()
    parts = bullet_id.split("-")
    assert parts[0] == "b"
    assert len(parts) == 3
    assert len(parts[2]) == 6
    assert generate_bullet_id() != bullet_id


def test_generate_diary_id():
    diary_id = generate_diary_id()
    assert diary_id.startswith("diary-")
    assert len(diary_id.split("-")[-1]) == 8


def test_hash_content_ignores_case_and_whitespace():
    a = hash_content("Run  the tests\nbefore committing")
    b = hash_content("run the tests before committing")
    assert a == b
    assert len(a) == 16
    assert hash_content("something else") != a


def test_normalize_text():
    assert normalize_text("  Hello\t  World ") == "hello world"


def test_tokenize_keeps_dotted_identifiers():
    tokens = tokenize("Use next.js and node-fetch, not a Y")
    assert "next.js" in tokens
    assert "node-fetch" in tokens
    assert "y" not in tokens


def test_jaccard_similarity():
    assert jaccard_similarity("run the tests", "run the tests") == 1.0
    assert jaccard_similarity("", "") == 1.0
    assert jaccard_similarity("run tests", "") == 0.0
    assert jaccard_similarity("alpha beta", "beta gamma") == 1 / 3


def test_extract_keywords_skips_stop_words_and_numbers():
    keywords = extract_keywords("Always use pytest fixtures for the database, pytest 8 and fixtures")
    assert keywords[:2] == ["pytest", "fixtures"]
    assert "always" not in keywords
    assert "the" not in keywords
    assert "8" not in keywords


def test_extract_keywords_limit():
    assert len(extract_keywords("one two three four five six", limit=3)) == 3


def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("a" * 20, 10) == "aaaaaaa..."


def test_extract_agent_from_path():
    assert extract_agent_from_path("/home/u/.claude/projects/x/1.jsonl") == "claude"
    assert extract_agent_from_path("/home/u/.codex/sessions/1.jsonl") == "codex"
    assert extract_agent_from_path("/tmp/session.jsonl") == "unknown"


def test_setup_logging_json(capsys):
    setup_logging(level="DEBUG", json_format=True)
    logger = logging.getLogger("test")
    assert logger.getEffectiveLevel() == logging.DEBUG
    setup_logging(level="INFO", json_format=False)


def test_log_event_merges_event_data(caplog):
    with caplog.at_level(logging.INFO, logger="agent_playbook.events"):
        log_event("bullet_added", {"bullet_id": "b-1"})
    record = caplog.records[-1]
    assert record.getMessage() == "bullet_added"
    assert record.event_data == {"event_type": "bullet_added", "bullet_id": "b-1"}
    json.dumps(record.event_data)
