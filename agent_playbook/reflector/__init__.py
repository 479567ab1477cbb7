from .parser import DeltaParseError, load_json_object, parse_deltas, strip_markdown_fences
from .prompts import format_bullets_for_prompt, format_history, format_reflector_prompt
from .reflector import ReflectionResult, Reflector, deduplicate_deltas, delta_key

__all__ = [
    "DeltaParseError",
    "ReflectionResult",
    "Reflector",
    "deduplicate_deltas",
    "delta_key",
    "format_bullets_for_prompt",
    "format_history",
    "format_reflector_prompt",
    "load_json_object",
    "parse_deltas",
    "strip_markdown_fences",
]
