from .client import (
    EvidenceSearch,
    MultiSourceSearch,
    SearchError,
    SearchFailure,
    SearchHit,
    SearchOutcome,
    SessionSearch,
    create_search,
    parse_hits,
    safe_search,
)

__all__ = [
    "EvidenceSearch",
    "MultiSourceSearch",
    "SearchError",
    "SearchFailure",
    "SearchHit",
    "SearchOutcome",
    "SessionSearch",
    "create_search",
    "parse_hits",
    "safe_search",
]
