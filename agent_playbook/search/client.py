# agent_playbook/search/client.py
"""Client side of the session search engine used as the evidence source."""

import json
import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Protocol

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from agent_playbook.core.config import PathsConfig

logger = logging.getLogger(__name__)

# Exit codes of the search binary
EXIT_INDEX_MISSING = 3
EXIT_NOT_FOUND = 4
EXIT_TIMEOUT = 10


class SearchFailure(str, Enum):
    NOT_FOUND = "not_found"
    INDEX_MISSING = "index_missing"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    OTHER = "other"


class SearchError(Exception):
    """Raised when a search cannot be answered; ``reason`` says why."""

    def __init__(self, reason: SearchFailure, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason


def _stringify(value: Any) -> Any:
    if isinstance(value, int | float):
        return str(value)
    return value


class SearchHit(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_path: str = Field(validation_alias=AliasChoices("source_path", "sessionPath", "session_path"))
    line_number: int = 0
    agent: str = "unknown"
    workspace: str | None = None
    title: str | None = None
    snippet: str = ""
    score: float | None = None
    timestamp: Annotated[str | None, BeforeValidator(_stringify)] = Field(
        default=None, validation_alias=AliasChoices("created_at", "timestamp")
    )


class EvidenceSearch(Protocol):
    def search(
        self,
        query: str,
        limit: int = 20,
        days: int | None = None,
        agent: str | None = None,
        workspace: str | None = None,
    ) -> list[SearchHit]: ...


def parse_hits(raw: Any) -> list[SearchHit]:
    """Parse robot-mode output: either a bare list of hits or ``{"hits": [...]}``."""
    if isinstance(raw, dict):
        raw = raw.get("hits", [])
    if not isinstance(raw, list):
        raise SearchError(SearchFailure.OTHER, "unexpected search output shape")
    hits = []
    for item in raw:
        try:
            hits.append(SearchHit.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping malformed search hit: {e}")
    return hits


class SessionSearch:
    """Runs the search binary in robot (JSON) mode."""

    def __init__(self, binary: str = "cass", timeout: float = 30.0):
        self.binary = binary
        self.timeout = timeout

    def _run(self, args: list[str], timeout: float) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                [self.binary, *args], capture_output=True, text=True, timeout=timeout
            )
        except FileNotFoundError as e:
            raise SearchError(SearchFailure.UNAVAILABLE, f"{self.binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise SearchError(SearchFailure.TIMEOUT, f"search timed out after {timeout}s") from e

    def search(
        self,
        query: str,
        limit: int = 20,
        days: int | None = None,
        agent: str | None = None,
        workspace: str | None = None,
    ) -> list[SearchHit]:
        """Search historical sessions.

        Returns:
            Matching hits; an empty list when nothing matched

        Raises:
            SearchError: For missing index, timeout, unavailable binary or bad output
        """
        args = ["search", query, "--robot", "--limit", str(limit)]
        if days:
            args += ["--days", str(days)]
        if agent:
            args += ["--agent", agent]
        if workspace:
            args += ["--workspace", workspace]

        proc = self._run(args, self.timeout)
        if proc.returncode == EXIT_NOT_FOUND:
            return []
        if proc.returncode == EXIT_INDEX_MISSING:
            raise SearchError(SearchFailure.INDEX_MISSING, proc.stderr.strip())
        if proc.returncode == EXIT_TIMEOUT:
            raise SearchError(SearchFailure.TIMEOUT, proc.stderr.strip())
        if proc.returncode != 0:
            raise SearchError(
                SearchFailure.OTHER, f"search exited with {proc.returncode}: {proc.stderr.strip()}"
            )

        if not proc.stdout.strip():
            return []
        try:
            return parse_hits(json.loads(proc.stdout))
        except json.JSONDecodeError as e:
            raise SearchError(SearchFailure.OTHER, f"invalid JSON from search: {e}") from e

    def rebuild_index(self) -> None:
        proc = self._run(["index"], max(self.timeout, 300.0))
        if proc.returncode != 0:
            raise SearchError(SearchFailure.INDEX_MISSING, f"index rebuild failed with {proc.returncode}")


@dataclass
class SearchOutcome:
    hits: list[SearchHit] = field(default_factory=list)
    failure: SearchFailure | None = None

    @property
    def failed(self) -> bool:
        return self.failure is not None


def safe_search(
    search: EvidenceSearch,
    query: str,
    limit: int = 20,
    days: int | None = None,
    agent: str | None = None,
    workspace: str | None = None,
) -> SearchOutcome:
    """Search without raising.

    "Nothing matched" comes back as an empty outcome; everything else as an
    empty outcome carrying the failure reason. A missing index is rebuilt
    once when the backend supports it, and a timeout is retried once with
    half the limit.
    """
    try:
        return SearchOutcome(hits=search.search(query, limit=limit, days=days, agent=agent, workspace=workspace))
    except SearchError as e:
        first = e

    if first.reason == SearchFailure.NOT_FOUND:
        return SearchOutcome()

    retry_limit = limit
    if first.reason == SearchFailure.INDEX_MISSING:
        rebuild = getattr(search, "rebuild_index", None)
        if rebuild is None:
            return SearchOutcome(failure=first.reason)
        logger.warning("Search index missing, rebuilding")
        try:
            rebuild()
        except SearchError as e:
            logger.error(f"Index rebuild failed: {e}")
            return SearchOutcome(failure=first.reason)
    elif first.reason == SearchFailure.TIMEOUT:
        retry_limit = max(1, limit // 2)
        logger.warning(f"Search timed out, retrying with limit {retry_limit}")
    else:
        logger.warning(f"Search unavailable ({first.reason.value}): {first}")
        return SearchOutcome(failure=first.reason)

    try:
        return SearchOutcome(
            hits=search.search(query, limit=retry_limit, days=days, agent=agent, workspace=workspace)
        )
    except SearchError as e:
        logger.warning(f"Search retry failed ({e.reason.value}): {e}")
        return SearchOutcome(failure=e.reason)


class MultiSourceSearch:
    """Fan one query out to several independent search sources concurrently.

    A failing source is logged and recorded in ``last_failures`` but does not
    affect the others. Only when every source fails is a SearchError raised.
    """

    def __init__(self, sources: dict[str, EvidenceSearch], max_workers: int = 4):
        if not sources:
            raise ValueError("MultiSourceSearch needs at least one source")
        self.sources = sources
        self.max_workers = max_workers
        self.last_failures: dict[str, str] = {}

    def search(
        self,
        query: str,
        limit: int = 20,
        days: int | None = None,
        agent: str | None = None,
        workspace: str | None = None,
    ) -> list[SearchHit]:
        self.last_failures = {}
        names = list(self.sources)
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(names))) as executor:
            futures = {
                name: executor.submit(
                    self.sources[name].search,
                    query,
                    limit=limit,
                    days=days,
                    agent=agent,
                    workspace=workspace,
                )
                for name in names
            }

        hits: list[SearchHit] = []
        for name in names:
            try:
                hits.extend(futures[name].result())
            except Exception as e:
                logger.warning(f"Search source {name} failed: {e}")
                self.last_failures[name] = str(e)

        if len(self.last_failures) == len(names):
            raise SearchError(SearchFailure.UNAVAILABLE, "all search sources failed")
        return hits


def create_search(paths: PathsConfig) -> EvidenceSearch:
    """Build the evidence search from config.

    Only the local binary gives a plain SessionSearch; configured remote
    binaries are fanned out to alongside it through MultiSourceSearch.
    """
    local = SessionSearch(paths.search_binary, paths.search_timeout)
    if not paths.remote_search_binaries:
        return local
    sources: dict[str, EvidenceSearch] = {"local": local}
    for name, binary in paths.remote_search_binaries.items():
        sources[name] = SessionSearch(binary, paths.search_timeout)
    return MultiSourceSearch(sources)
