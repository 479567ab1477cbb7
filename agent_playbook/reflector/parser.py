# agent_playbook/reflector/parser.py
import json
import logging
from typing import Any

from agent_playbook.core.schema import PlaybookDelta, parse_delta_list

logger = logging.getLogger(__name__)


class DeltaParseError(Exception):
    """Raised when reflector output cannot be parsed into deltas."""

    pass


def strip_markdown_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block if present."""
    cleaned = text.strip()
    if not cleaned.startswith("```"):
        return cleaned
    lines = cleaned.split("\n")
    end_idx = len(lines)
    for i in range(len(lines) - 1, 0, -1):
        if lines[i].strip() == "```":
            end_idx = i
            break
    return "\n".join(lines[1:end_idx])


def load_json_object(text: str, error_cls: type[Exception]) -> dict[str, Any]:
    """Decode LLM output that must be a single JSON object.

    Raises:
        error_cls: If the text is not valid JSON or not an object
    """
    try:
        data = json.loads(strip_markdown_fences(text))
    except json.JSONDecodeError as e:
        raise error_cls(f"Invalid JSON: {e}") from None
    if not isinstance(data, dict):
        raise error_cls("JSON must be an object")
    return data


def parse_deltas(
    json_str: str, session_path: str | None = None, max_deltas: int = 20
) -> list[PlaybookDelta]:
    """Parse reflector output (``{"deltas": [...]}``) into validated deltas.

    Individual deltas that fail validation are dropped with a warning rather
    than failing the whole response. ``session_path`` is stamped onto add
    deltas and onto feedback deltas that lack one.

    Args:
        json_str: Raw JSON string from LLM (may contain markdown fencing)
        session_path: Session the reflection came from
        max_deltas: Cap on the number of deltas returned

    Returns:
        At most ``max_deltas`` deltas, in output order

    Raises:
        DeltaParseError: If the response is not JSON or has no ``deltas`` list
    """
    data = load_json_object(json_str, DeltaParseError)
    raw_deltas = data.get("deltas")
    if not isinstance(raw_deltas, list):
        raise DeltaParseError("deltas must be a list")

    deltas, rejected = parse_delta_list(raw_deltas)
    for reason in rejected:
        logger.warning(f"Dropping invalid {reason}")

    if session_path:
        for delta in deltas:
            if delta.type == "add":
                delta.source_session = session_path
            elif delta.type in ("helpful", "harmful") and not delta.source_session:
                delta.source_session = session_path

    if len(deltas) > max_deltas:
        logger.info(f"Reflector returned {len(deltas)} deltas; keeping first {max_deltas}")
    return deltas[:max_deltas]
