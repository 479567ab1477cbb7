import hashlib
import json
import logging
import re
import secrets
import time
from collections import Counter
from datetime import UTC, datetime
from typing import Any

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:[._\-+]+[a-z0-9]+)*")
_WHITESPACE_RE = re.compile(r"\s+")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "been", "but", "by", "can",
        "do", "does", "for", "from", "has", "have", "if", "in", "into", "is",
        "it", "its", "of", "on", "or", "should", "so", "that", "the", "their",
        "then", "there", "these", "this", "to", "was", "were", "when", "which",
        "while", "will", "with", "would", "you", "your", "not", "no", "all",
        "any", "before", "after", "always", "never", "use", "using", "via",
    }
)


def now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_bullet_id() -> str:
    """Generate unique bullet ID in format: b-{base36 millis}-{random6}"""
    stamp = _base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"b-{stamp}-{rand}"


def generate_diary_id() -> str:
    """Generate unique diary/processing ID using timestamp + random suffix"""
    ts = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    rand = secrets.token_hex(4)
    return f"diary-{ts}-{rand}"


def normalize_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.strip().lower())


def hash_content(text: str) -> str:
    """Generate stable SHA-256 hash of normalized text content"""
    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()[:16]


def tokenize(text: str) -> list[str]:
    """Split text into lowercase tokens, keeping dotted/hyphenated identifiers whole.

    Tokens shorter than two characters are dropped.
    """
    if not text:
        return []
    return [tok for tok in _TOKEN_RE.findall(text.lower()) if len(tok) >= 2]


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the token sets of two texts.

    Two texts with no tokens at all are considered identical (1.0).
    """
    tokens_a = set(tokenize(text_a))
    tokens_b = set(tokenize(text_b))
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def extract_keywords(text: str, limit: int = 10) -> list[str]:
    """Extract the most frequent non-stop-word tokens from text.

    Args:
        text: Source text
        limit: Maximum number of keywords to return

    Returns:
        Keywords ordered by frequency, ties broken by first appearance
    """
    tokens = [tok for tok in tokenize(text) if tok not in STOP_WORDS and not tok.isdigit()]
    counts = Counter(tokens)
    return [tok for tok, _ in counts.most_common(limit)]


def truncate(text: str, max_len: int = 80) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def extract_agent_from_path(session_path: str) -> str:
    """Best-effort guess of which coding agent produced a session file."""
    lowered = session_path.lower()
    for marker, agent in (
        (".claude", "claude"),
        (".codex", "codex"),
        ("cursor", "cursor"),
        (".aider", "aider"),
        ("gemini", "gemini"),
    ):
        if marker in lowered:
            return agent
    return "unknown"


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Configure structured JSON logging"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    if json_format:
        class JSONFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                log_obj = {
                    "timestamp": datetime.now(UTC).isoformat(),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": record.getMessage(),
                }
                if record.exc_info:
                    log_obj["exception"] = self.formatException(record.exc_info)
                if hasattr(record, "event_data"):
                    log_obj.update(record.event_data)
                return json.dumps(log_obj, default=str)

        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logging.root.handlers = []
    logging.root.addHandler(handler)
    logging.root.setLevel(log_level)


def log_event(event_type: str, data: dict[str, Any]) -> None:
    """Log structured event with metadata"""
    logger = logging.getLogger("agent_playbook.events")
    logger.info(event_type, extra={"event_data": {"event_type": event_type, **data}})
