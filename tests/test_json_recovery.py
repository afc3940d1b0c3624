"""
Tests for JSON recovery from malformed model output.
"""

import pytest

from lessonforge.json_recovery import (
    JsonRecoveryError,
    close_truncated_json,
    extract_fenced_json,
    parse_json_response,
    repair_truncated_json,
    sanitize_json_backslashes,
)


class TestParseJsonResponse:
    """Each recovery stage, in the order it is attempted."""

    def test_direct_object(self):
        """Well-formed JSON parses unchanged."""
        assert parse_json_response('{"a": 1, "b": [true, null]}') == {"a": 1, "b": [True, None]}

    def test_direct_array(self):
        assert parse_json_response('  [{"a": 1}]\n') == [{"a": 1}]

    def test_fenced_block(self):
        """JSON inside a markdown fence surrounded by prose."""
        text = 'Here is the lesson:\n```json\n{"a": [1, 2]}\n```\nLet me know!'
        assert parse_json_response(text) == {"a": [1, 2]}

    def test_bracket_scan(self):
        """Prose before and after a bare object."""
        text = 'Sure! {"title": "Beams"} Hope this helps.'
        assert parse_json_response(text) == {"title": "Beams"}

    def test_latex_backslashes(self):
        """Single-backslash LaTeX inside strings is kept literally."""
        text = r'{"formula": "\sigma = F/A", "note": "\Delta L"}'
        result = parse_json_response(text)
        assert result["formula"] == r"\sigma = F/A"
        assert result["note"] == r"\Delta L"

    def test_backslash_u_without_hex(self):
        """\\underline is not a unicode escape."""
        result = parse_json_response(r'{"x": "\underline{v}"}')
        assert result["x"] == r"\underline{v}"

    def test_valid_escapes_preserved(self):
        result = parse_json_response('{"x": "line\\nnext \\"quoted\\" caf\\u00e9"}')
        assert result["x"] == 'line\nnext "quoted" caf\xe9'

    def test_trailing_commas(self):
        assert parse_json_response('{"a": [1, 2,],}') == {"a": [1, 2]}

    def test_truncated_inside_string(self):
        """Output cut off mid-string inside an array is closed."""
        text = '{"title": "Beams", "items": ["a", "b", "c'
        assert parse_json_response(text) == {"title": "Beams", "items": ["a", "b", "c"]}

    def test_truncated_after_complete_value(self):
        text = '{"overview": "Why beams bend.", "key_takeaways": ["One", "Two",'
        result = parse_json_response(text)
        assert result == {"overview": "Why beams bend.", "key_takeaways": ["One", "Two"]}

    def test_truncated_fence(self):
        """An unclosed fence with truncated JSON inside."""
        text = '```json\n{"overview": "Stress", "worked_examples": ["Step 1'
        result = parse_json_response(text)
        assert result["overview"] == "Stress"
        assert result["worked_examples"] == ["Step 1"]

    def test_unrecoverable_raises(self):
        """Prose with no JSON raises with the last decoder message."""
        with pytest.raises(JsonRecoveryError) as exc_info:
            parse_json_response("I cannot help with that request.")
        assert exc_info.value.last_error

    def test_empty_response_raises(self):
        with pytest.raises(JsonRecoveryError, match="empty"):
            parse_json_response("   \n ")

    def test_bare_scalar_rejected(self):
        """A JSON string is valid JSON but not structured data."""
        with pytest.raises(JsonRecoveryError):
            parse_json_response('"just a string"')


class TestHelpers:
    """The individual recovery stages."""

    def test_sanitize_doubles_invalid_escapes_only(self):
        assert sanitize_json_backslashes(r'\sigma \n \" \\') == r'\\sigma \n \" \\'

    def test_sanitize_keeps_unicode_escape(self):
        assert sanitize_json_backslashes("caf\\u00e9") == "caf\\u00e9"

    def test_extract_fenced_json_none_without_fence(self):
        assert extract_fenced_json('{"a": 1}') is None

    def test_repair_closes_brackets_then_braces(self):
        """Counts unclosed containers and appends ']' before '}'."""
        assert repair_truncated_json('{"a": ["x", "y"') == '{"a": ["x", "y"]}'

    def test_repair_strips_trailing_comma(self):
        assert repair_truncated_json('{"a": ["x", "y", ') == '{"a": ["x", "y"]}'

    def test_close_truncated_dangling_key(self):
        """A cut inside an object key falls back to the last complete value."""
        candidates = close_truncated_json('{"a": 1, "lon')
        assert '{"a": 1}' in candidates

    def test_close_truncated_nothing_to_close(self):
        assert close_truncated_json("no brackets here") == []
