"""
json_recovery.py - Salvage structured JSON from unreliable LLM response text.

Models wrap JSON in prose or markdown fences, emit LaTeX with single
backslashes inside string literals, and get cut off when they hit the
output token limit. parse_json_response() works through a fixed sequence
of recovery stages and returns the first one that yields an object or
array:

    1. direct parse of the trimmed text
    2. fenced code block extraction (```json ... ```)
    3. bracket scan (first '{' to last '}', then first '[' to last ']')
    4. escape sanitization (invalid backslash escapes are doubled; \\u counts
       as valid only when four hex digits follow, so LaTeX such as
       \\underline is doubled even though u is a JSON escape character)
    5. truncation repair (trim to the last complete string, close brackets)

If every stage fails, JsonRecoveryError is raised carrying the last
underlying decoder message.
"""

import json
import re
from typing import Any

# Characters that may legally follow a backslash inside a JSON string
VALID_ESCAPES = frozenset('"\\/bfnrtu')

# Upper bound on backslash-escaped quotes trimmed during truncation repair
MAX_QUOTE_TRIMS = 20

_FENCE_RE = re.compile(r"```(?:json|JSON)?[^\S\n]*\n?([\s\S]*?)```")
_OPEN_FENCE_RE = re.compile(r"```(?:json|JSON)?[^\S\n]*\n?([\s\S]*)$")
_TRAILING_COMMA_RE = re.compile(r",\s*$")
_HEX4_RE = re.compile(r"[0-9a-fA-F]{4}")


class JsonRecoveryError(ValueError):
    """Raised when no recovery stage could produce a JSON object or array."""

    def __init__(self, message: str, last_error: str | None = None):
        super().__init__(message)
        self.last_error = last_error


def parse_json_response(response_text: str) -> dict | list:
    """
    Parse a JSON object or array out of raw model output.

    Args:
        response_text: Raw response text from the completion service

    Returns:
        The parsed dict or list

    Raises:
        JsonRecoveryError: If the text is empty or no stage recovers a value
    """
    text = (response_text or "").strip()
    if not text:
        raise JsonRecoveryError("Model returned an empty response.")

    last_error = None

    # Stage 1: direct parse
    value, last_error = _try_parse(text, last_error)
    if value is not None:
        return value

    # Stage 2: fenced block
    fenced = extract_fenced_json(text)
    if fenced:
        value, last_error = _try_parse(fenced, last_error)
        if value is not None:
            return value

    # Stage 3: bracket scan over the fenced content if any, else the full text
    scan_source = fenced or text
    clipped = [
        c for c in (
            extract_delimited_json(scan_source, "{", "}"),
            extract_delimited_json(scan_source, "[", "]"),
        ) if c
    ]
    for candidate in clipped:
        value, last_error = _try_parse(candidate, last_error)
        if value is not None:
            return value

    # Remaining stages work on every plausible payload, most specific first
    candidates = _dedupe([*clipped, fenced, _open_ended_payload(scan_source), text])

    # Stage 4: escape sanitization
    sanitized = [sanitize_json_backslashes(c) for c in candidates]
    for candidate in sanitized:
        for attempt in _dedupe([candidate, normalize_llm_json(candidate)]):
            value, last_error = _try_parse(attempt, last_error)
            if value is not None:
                return value

    # Stage 5: truncation repair
    for candidate in sanitized:
        for attempt in _dedupe([repair_truncated_json(candidate), *close_truncated_json(candidate)]):
            value, last_error = _try_parse(attempt, last_error)
            if value is not None:
                return value

    raise JsonRecoveryError(
        f"Could not parse JSON from response: {last_error or 'unknown error'}",
        last_error=last_error,
    )


def extract_fenced_json(text: str) -> str | None:
    """Return the content of the first markdown code fence, or None.

    An opening fence with no closing fence (truncated output) yields
    everything after the opening fence.
    """
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip() or None
    match = _OPEN_FENCE_RE.search(text)
    if match:
        return match.group(1).strip() or None
    return None


def extract_delimited_json(text: str, start: str, end: str) -> str | None:
    """Return text from the first `start` to the last `end`, inclusive."""
    start_index = text.find(start)
    end_index = text.rfind(end)
    if start_index == -1 or end_index == -1 or end_index <= start_index:
        return None
    return text[start_index:end_index + 1].strip()


def sanitize_json_backslashes(raw: str) -> str:
    """
    Double every backslash that does not start a valid JSON escape.

    Turns LaTeX such as \\sigma or \\frac{a}{b} inside string literals into
    literal backslashes instead of decoder errors. Valid escapes
    (\\" \\\\ \\/ \\b \\f \\n \\r \\t, and \\u followed by four hex
    digits) pass through untouched.
    """
    out = []
    i = 0
    n = len(raw)
    while i < n:
        ch = raw[i]
        if ch == "\\" and i + 1 < n:
            nxt = raw[i + 1]
            if nxt == "u" and not _HEX4_RE.match(raw, i + 2):
                # \underline, \upsilon: not a unicode escape
                out.append("\\\\")
                i += 1
            elif nxt in VALID_ESCAPES:
                out.append(ch)
                out.append(nxt)
                i += 2
            else:
                out.append("\\\\")
                i += 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def normalize_llm_json(text: str) -> str:
    """Drop '+' prefixes on numbers and trailing commas before '}' or ']'."""
    # "key": +4
    text = re.sub(r'"\s*:\s*\+(\d)', r'": \1', text)
    # [+4, ...
    text = re.sub(r'\[\s*\+(\d)', r'[\1', text)
    # ..., +4
    text = re.sub(r',\s*\+(\d)', r', \1', text)
    return re.sub(r',\s*([}\]])', r'\1', text)


def _is_escaped(s: str, index: int) -> bool:
    """True when the character at index is preceded by an odd run of backslashes."""
    count = 0
    j = index - 1
    while j >= 0 and s[j] == "\\":
        count += 1
        j -= 1
    return count % 2 == 1


def repair_truncated_json(raw: str) -> str:
    """
    Repair JSON cut off at the output length limit.

    Trims back to the last unescaped quote, strips a trailing comma, then
    counts unclosed '{' and '[' outside string literals and appends the
    missing ']' characters followed by the missing '}' characters.
    """
    s = raw
    for _ in range(MAX_QUOTE_TRIMS):
        last_quote = s.rfind('"')
        if last_quote < 0:
            break
        if _is_escaped(s, last_quote):
            s = s[:last_quote]
            continue
        s = s[:last_quote + 1]
        break

    s = _TRAILING_COMMA_RE.sub("", s)

    open_braces = 0
    open_brackets = 0
    in_string = False
    escaped = False
    for ch in s:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            open_braces += 1
        elif ch == "}":
            open_braces -= 1
        elif ch == "[":
            open_brackets += 1
        elif ch == "]":
            open_brackets -= 1

    return s + "]" * max(open_brackets, 0) + "}" * max(open_braces, 0)


def close_truncated_json(raw: str) -> list[str]:
    """
    Nesting-aware repair candidates for truncated JSON.

    Handles the shapes repair_truncated_json() cannot: a cut inside a string
    value, a dangling object key, or arrays nested inside objects nested
    inside arrays. Returns candidates in preference order:

    1. close the open string value and every open container
    2. cut back to the last complete value and close every open container
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    string_is_key = False
    expect_key = False
    safe_cut = 0
    safe_stack: list[str] = []
    started = False

    for i, ch in enumerate(raw):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
                if not string_is_key:
                    safe_cut, safe_stack = i + 1, list(stack)
            continue

        if ch == '"':
            in_string = True
            string_is_key = bool(stack) and stack[-1] == "{" and expect_key
        elif ch in "{[":
            stack.append(ch)
            started = True
            expect_key = ch == "{"
            safe_cut, safe_stack = i + 1, list(stack)
        elif ch in "}]":
            if stack:
                stack.pop()
            expect_key = False
            safe_cut, safe_stack = i + 1, list(stack)
        elif ch == ",":
            if stack:
                safe_cut, safe_stack = i, list(stack)
            expect_key = bool(stack) and stack[-1] == "{"
        elif ch == ":":
            expect_key = False

    if not started:
        return []

    candidates = []
    if in_string and not string_is_key:
        body = raw[:-1] if escaped else raw
        candidates.append(body + '"' + _closers(stack))
    candidates.append(raw[:safe_cut] + _closers(safe_stack))
    return candidates


def _closers(stack: list[str]) -> str:
    return "".join("}" if opener == "{" else "]" for opener in reversed(stack))


def _open_ended_payload(text: str) -> str | None:
    """Text from the first '{' or '[' to the end, for truncated payloads."""
    positions = [p for p in (text.find("{"), text.find("[")) if p >= 0]
    if not positions:
        return None
    return text[min(positions):]


def _try_parse(text: str, last_error: str | None) -> tuple[Any, str | None]:
    """Return (value, last_error); value is None unless an object or array parsed."""
    try:
        value = json.loads(text, strict=False)
    except json.JSONDecodeError as e:
        return None, str(e)
    if isinstance(value, (dict, list)):
        return value, last_error
    return None, f"Expected a JSON object or array, got {type(value).__name__}"


def _dedupe(items: list[str | None]) -> list[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out
