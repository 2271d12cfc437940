"""Unit tests for payload sanitization."""

import math

import pytest

from app.utils.payload_sanitizer import (
    MAX_ARRAY_ITEMS,
    MAX_KEY_LENGTH,
    MAX_STRING_LENGTH,
    sanitize_multiline,
    sanitize_payload,
    sanitize_single_line,
    truncate_message,
)


@pytest.mark.unit
def test_single_line_strips_control_characters_and_trims():
    assert sanitize_single_line("  Hello\x00 wor\x07ld\n\t ") == "Hello world"


@pytest.mark.unit
def test_multiline_keeps_line_breaks_and_collapses_runs():
    text = "line one   \r\n\r\n  line two\t\tend\x01  "
    assert sanitize_multiline(text) == "line one\nline two end"


@pytest.mark.unit
def test_truncate_message_appends_ellipsis():
    assert truncate_message("x" * 10, length=5) == "xxxx…"
    assert truncate_message("short", length=5) == "short"


@pytest.mark.unit
def test_keys_are_rewritten_to_safe_charset_and_bounded():
    result = sanitize_payload(
        {
            "ti\x00tle": "ok",
            "has space/and$": 1,
            "k" * 100: True,
            "\x01\x02": "dropped",
        }
    )

    assert result["title"] == "ok"
    assert result["has_space_and_"] == 1
    assert result["k" * MAX_KEY_LENGTH] is True
    assert len(result) == 3


@pytest.mark.unit
def test_values_are_bounded_and_unsupported_types_dropped():
    result = sanitize_payload(
        {
            "long": "a" * 2000,
            "items": list(range(50)),
            "nan": math.nan,
            "inf": math.inf,
            "ratio": 0.5,
            "none": None,
            "blob": b"\x00\x01",
            "fn": lambda: None,
            "obj": object(),
            "mixed": ["x", None, {"y": None, "z": 1}, object()],
        }
    )

    assert len(result["long"]) == MAX_STRING_LENGTH
    assert result["items"] == list(range(MAX_ARRAY_ITEMS))
    assert result["ratio"] == 0.5
    assert result["mixed"] == ["x", {"z": 1}]
    for key in ("nan", "inf", "none", "blob", "fn", "obj"):
        assert key not in result


@pytest.mark.unit
def test_nesting_is_capped():
    result = sanitize_payload({"a": {"b": {"c": {"d": {"e": 1}}, "keep": "yes"}}})
    assert result == {"a": {"b": {"c": {}, "keep": "yes"}}}


@pytest.mark.unit
def test_deeply_nested_input_does_not_recurse_without_bound():
    payload = current = {}
    for _ in range(5000):
        current["next"] = {}
        current = current["next"]

    result = sanitize_payload(payload)
    assert result == {"next": {"next": {"next": {}}}}


@pytest.mark.unit
@pytest.mark.parametrize("value", [None, "text", 42, ["a", "b"], ("x",)])
def test_non_mapping_input_yields_empty_dict(value):
    assert sanitize_payload(value) == {}


@pytest.mark.unit
def test_sanitize_is_idempotent():
    raw = {
        "Notes ": "  first line  \n\n\n second   line ",
        "tags": ["a\x00", "  b  ", None, ["deep", ["deeper", ["deepest"]]]],
        "meta": {"count": 3, "nested": {"flag": False, "txt": "x" * 499 + " y"}},
        "bad key!": "v",
    }

    once = sanitize_payload(raw)
    assert sanitize_payload(once) == once
