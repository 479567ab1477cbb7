import json
import subprocess
from unittest.mock import patch

import pytest

from agent_playbook.core.config import PathsConfig
from agent_playbook.search import (
    MultiSourceSearch,
    SearchError,
    SearchFailure,
    SearchHit,
    SessionSearch,
    create_search,
    parse_hits,
    safe_search,
)

RUN = "agent_playbook.search.client.subprocess.run"


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class ScriptedSearch:
    """Search double that raises or returns from a script, one item per call."""

    def __init__(self, script, rebuild_error=None):
        self.script = list(script)
        self.calls = []
        self.rebuilt = 0
        self.rebuild_error = rebuild_error

    def search(self, query, limit=20, days=None, agent=None, workspace=None):
        self.calls.append(limit)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def rebuild_index(self):
        self.rebuilt += 1
        if self.rebuild_error is not None:
            raise self.rebuild_error


def test_hit_field_aliases():
    hit = SearchHit.model_validate(
        {"source_path": "/s/1.jsonl", "line_number": 12, "snippet": "fixed it", "created_at": 1700000000}
    )
    assert hit.session_path == "/s/1.jsonl"
    assert hit.line_number == 12
    assert hit.timestamp == "1700000000"
    assert SearchHit.model_validate({"sessionPath": "/s/2.jsonl"}).session_path == "/s/2.jsonl"


def test_parse_hits_shapes():
    assert len(parse_hits([{"source_path": "/s/1"}])) == 1
    assert len(parse_hits({"hits": [{"source_path": "/s/1"}, {"snippet": "no path"}]})) == 1
    with pytest.raises(SearchError):
        parse_hits("garbage")


class TestSessionSearch:
    def test_builds_robot_command(self):
        payload = json.dumps({"hits": [{"source_path": "/s/1.jsonl", "snippet": "Fixed the build"}]})
        with patch(RUN, return_value=_completed(stdout=payload)) as run:
            hits = SessionSearch(binary="cass", timeout=5).search(
                "pin versions", limit=7, days=30, agent="claude", workspace="/work/app"
            )

        assert [h.session_path for h in hits] == ["/s/1.jsonl"]
        args = run.call_args.args[0]
        assert args == [
            "cass", "search", "pin versions", "--robot", "--limit", "7",
            "--days", "30", "--agent", "claude", "--workspace", "/work/app",
        ]
        assert run.call_args.kwargs["timeout"] == 5

    def test_not_found_exit_is_empty(self):
        with patch(RUN, return_value=_completed(returncode=4)):
            assert SessionSearch().search("anything") == []

    @pytest.mark.parametrize(
        "returncode,reason",
        [(3, SearchFailure.INDEX_MISSING), (10, SearchFailure.TIMEOUT), (1, SearchFailure.OTHER)],
    )
    def test_exit_codes(self, returncode, reason):
        with patch(RUN, return_value=_completed(returncode=returncode, stderr="boom")):
            with pytest.raises(SearchError) as exc_info:
                SessionSearch().search("anything")
        assert exc_info.value.reason == reason

    def test_missing_binary(self):
        with patch(RUN, side_effect=FileNotFoundError("cass")):
            with pytest.raises(SearchError) as exc_info:
                SessionSearch().search("anything")
        assert exc_info.value.reason == SearchFailure.UNAVAILABLE

    def test_subprocess_timeout(self):
        with patch(RUN, side_effect=subprocess.TimeoutExpired(cmd="cass", timeout=1)):
            with pytest.raises(SearchError) as exc_info:
                SessionSearch().search("anything")
        assert exc_info.value.reason == SearchFailure.TIMEOUT

    def test_invalid_json(self):
        with patch(RUN, return_value=_completed(stdout="{not json")):
            with pytest.raises(SearchError) as exc_info:
                SessionSearch().search("anything")
        assert exc_info.value.reason == SearchFailure.OTHER


class TestSafeSearch:
    def test_success(self):
        hit = SearchHit(session_path="/s/1")
        outcome = safe_search(ScriptedSearch([[hit]]), "q")
        assert outcome.hits == [hit]
        assert not outcome.failed

    def test_timeout_retries_with_half_limit(self):
        hit = SearchHit(session_path="/s/1")
        search = ScriptedSearch([SearchError(SearchFailure.TIMEOUT), [hit]])

        outcome = safe_search(search, "q", limit=20)

        assert outcome.hits == [hit]
        assert search.calls == [20, 10]

    def test_missing_index_rebuilds_once(self):
        search = ScriptedSearch([SearchError(SearchFailure.INDEX_MISSING), []])
        outcome = safe_search(search, "q")
        assert search.rebuilt == 1
        assert not outcome.failed

    def test_failed_rebuild(self):
        search = ScriptedSearch(
            [SearchError(SearchFailure.INDEX_MISSING)],
            rebuild_error=SearchError(SearchFailure.INDEX_MISSING, "rebuild failed"),
        )
        outcome = safe_search(search, "q")
        assert outcome.failure == SearchFailure.INDEX_MISSING
        assert len(search.calls) == 1

    def test_unavailable_is_not_retried(self):
        search = ScriptedSearch([SearchError(SearchFailure.UNAVAILABLE)])
        outcome = safe_search(search, "q")
        assert outcome.failure == SearchFailure.UNAVAILABLE
        assert len(search.calls) == 1

    def test_retry_failure_reported(self):
        search = ScriptedSearch([SearchError(SearchFailure.TIMEOUT), SearchError(SearchFailure.TIMEOUT)])
        outcome = safe_search(search, "q", limit=1)
        assert outcome.failure == SearchFailure.TIMEOUT
        assert search.calls == [1, 1]


class TestMultiSourceSearch:
    def test_combines_sources_and_tolerates_failures(self):
        hit_a = SearchHit(session_path="/a/1")
        hit_b = SearchHit(session_path="/b/1")
        multi = MultiSourceSearch(
            {
                "local": ScriptedSearch([[hit_a]]),
                "remote": ScriptedSearch([SearchError(SearchFailure.TIMEOUT, "slow host")]),
                "team": ScriptedSearch([[hit_b]]),
            }
        )

        hits = multi.search("q")

        assert hits == [hit_a, hit_b]
        assert list(multi.last_failures) == ["remote"]

    def test_all_sources_fail(self):
        multi = MultiSourceSearch({"local": ScriptedSearch([SearchError(SearchFailure.UNAVAILABLE)])})
        with pytest.raises(SearchError) as exc_info:
            multi.search("q")
        assert exc_info.value.reason == SearchFailure.UNAVAILABLE

    def test_needs_a_source(self):
        with pytest.raises(ValueError):
            MultiSourceSearch({})


class TestCreateSearch:
    def test_local_only(self):
        search = create_search(PathsConfig(search_binary="/opt/cass", search_timeout=5.0))
        assert isinstance(search, SessionSearch)
        assert (search.binary, search.timeout) == ("/opt/cass", 5.0)

    def test_remote_sources_fan_out(self):
        paths = PathsConfig(search_binary="cass", remote_search_binaries={"workstation": "/mnt/ws/cass"})

        search = create_search(paths)

        assert isinstance(search, MultiSourceSearch)
        assert list(search.sources) == ["local", "workstation"]
        assert search.sources["workstation"].binary == "/mnt/ws/cass"

    def test_remote_sources_queried_together(self):
        paths = PathsConfig(search_binary="cass", remote_search_binaries={"workstation": "/mnt/ws/cass"})
        outputs = {
            "cass": _completed(stdout=json.dumps([{"sessionPath": "/local/1.jsonl"}])),
            "/mnt/ws/cass": _completed(returncode=1, stderr="host unreachable"),
        }

        with patch(RUN, side_effect=lambda cmd, **kwargs: outputs[cmd[0]]):
            outcome = safe_search(create_search(paths), "migrations")

        assert [hit.session_path for hit in outcome.hits] == ["/local/1.jsonl"]
        assert not outcome.failed
