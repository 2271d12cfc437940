"""
Bounded sanitization for user-supplied job metadata.

Everything here is a pure transform: unsafe input degrades to a smaller,
safe structure and nothing raises. Sanitizing already-sanitized data returns
it unchanged, so payloads can be re-sanitized on every read and write.
"""

import math
import re
from typing import Any, Dict, Mapping

MAX_STRING_LENGTH = 500
MAX_ARRAY_ITEMS = 20
MAX_KEY_LENGTH = 60
MAX_DEPTH = 4

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")
# Same as above but keeps tab and newline so multiline text can be collapsed.
_CONTROL_CHARS_MULTILINE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]+")
_WHITESPACE_RUN = re.compile(r"\s+")
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")

_DROP = object()


def sanitize_single_line(value: str) -> str:
    """Strip control characters (line breaks included) and trim."""
    return _CONTROL_CHARS.sub("", value).strip()


def _collapse_whitespace(match: "re.Match[str]") -> str:
    return "\n" if "\n" in match.group(0) else " "


def sanitize_multiline(value: str) -> str:
    """Collapse whitespace runs while keeping line breaks, then trim."""
    normalized = value.replace("\r\n", "\n").replace("\r", "\n")
    without_control = _CONTROL_CHARS_MULTILINE.sub("", normalized)
    return _WHITESPACE_RUN.sub(_collapse_whitespace, without_control).strip()


def truncate_message(message: str, length: int = MAX_STRING_LENGTH) -> str:
    if len(message) > length:
        return f"{message[: length - 1]}…"
    return message


def sanitize_key(key: Any) -> str:
    cleaned = sanitize_single_line(str(key))
    return _UNSAFE_KEY_CHARS.sub("_", cleaned)[:MAX_KEY_LENGTH]


def _sanitize_string(value: str) -> str:
    # rstrip again: the cut can land on a space, which a second pass would trim.
    return sanitize_multiline(value)[:MAX_STRING_LENGTH].rstrip()


def _sanitize_value(value: Any, depth: int) -> Any:
    if isinstance(value, str):
        return _sanitize_string(value)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else _DROP
    if isinstance(value, Mapping):
        if depth >= MAX_DEPTH:
            return _DROP
        return _sanitize_mapping(value, depth + 1)
    if isinstance(value, (list, tuple)):
        if depth >= MAX_DEPTH:
            return _DROP
        items = []
        for entry in list(value)[:MAX_ARRAY_ITEMS]:
            cleaned = _sanitize_value(entry, depth + 1)
            if cleaned is not _DROP:
                items.append(cleaned)
        return items
    # None, bytes, callables, arbitrary objects
    return _DROP


def _sanitize_mapping(payload: Mapping, depth: int) -> Dict[str, Any]:
    output: Dict[str, Any] = {}
    for key, value in payload.items():
        safe_key = sanitize_key(key)
        if not safe_key:
            continue
        cleaned = _sanitize_value(value, depth)
        if cleaned is _DROP:
            continue
        output[safe_key] = cleaned
    return output


def sanitize_payload(payload: Any) -> Dict[str, Any]:
    """
    Sanitize an arbitrary key/value structure for persistence.

    Non-mapping input yields an empty dict. Containers nested deeper than
    MAX_DEPTH levels are dropped.
    """
    if not isinstance(payload, Mapping):
        return {}
    return _sanitize_mapping(payload, 1)
