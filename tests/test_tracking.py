from agent_playbook.core.lock import lock_path_for
from agent_playbook.core.schema import ProcessedEntry
from agent_playbook.core.tracking import HEADER, ProcessedLog, processed_log_path


def test_processed_log_path(tmp_path):
    assert processed_log_path(tmp_path) == tmp_path / "global.processed.log"

    ws_log = processed_log_path(tmp_path, str(tmp_path / "project"))
    assert ws_log.parent == tmp_path
    assert ws_log.name.startswith("ws-")
    assert ws_log.name.endswith(".processed.log")
    assert processed_log_path(tmp_path, str(tmp_path / "project")) == ws_log
    assert processed_log_path(tmp_path, str(tmp_path / "other")) != ws_log


def test_append_and_reload(tmp_path):
    log_path = tmp_path / "reflections" / "global.processed.log"
    log = ProcessedLog(log_path)
    log.load()
    assert log.processed_paths() == set()

    log.append_batch(
        [
            ProcessedEntry(session_path="/s/1.jsonl", diary_id="diary-1", deltas_proposed=3, deltas_applied=2),
            ProcessedEntry(session_path="/s/2.jsonl"),
        ]
    )

    lines = log_path.read_text().splitlines()
    assert lines[0] == HEADER
    assert len(lines) == 3
    assert not lock_path_for(log_path).exists()

    reloaded = ProcessedLog(log_path)
    reloaded.load()
    assert reloaded.has("/s/1.jsonl")
    assert reloaded.processed_paths() == {"/s/1.jsonl", "/s/2.jsonl"}
    first = next(e for e in reloaded.entries() if e.session_path == "/s/1.jsonl")
    assert first.diary_id == "diary-1"
    assert (first.deltas_proposed, first.deltas_applied) == (3, 2)


def test_header_written_once(tmp_path):
    log = ProcessedLog(tmp_path / "log")
    log.append_batch([ProcessedEntry(session_path="/s/1")])
    log.append_batch([ProcessedEntry(session_path="/s/2")])
    text = (tmp_path / "log").read_text()
    assert text.count(HEADER) == 1


def test_malformed_lines_are_skipped(tmp_path):
    log_path = tmp_path / "log"
    log_path.write_text(
        HEADER + "\n"
        "\n"
        "# a comment\n"
        "garbage-without-tabs\n"
        "d-1\t/s/ok.jsonl\tnot-a-date\tx\ty\n"
        "-\t/s/also-ok.jsonl\n"
    )
    log = ProcessedLog(log_path)
    log.load()
    assert log.processed_paths() == {"/s/ok.jsonl", "/s/also-ok.jsonl"}


def test_empty_batch_does_not_create_file(tmp_path):
    log = ProcessedLog(tmp_path / "log")
    log.append_batch([])
    assert not (tmp_path / "log").exists()
