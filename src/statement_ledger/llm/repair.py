"""Turn raw model text into a JSON object, repairing the usual LLM damage.

Tiers, each tried only when the previous one failed:

1. strip markdown fences, parse directly
2. parse from the first ``{`` (to the end, then to the last ``}``)
3. segment-aware repair: string literals and the syntax between them are
   repaired separately, so description text is never rewritten
4. truncation repair: cut after the last complete transaction and close
   whatever is still open
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from ..errors import EmptyResponseError, MalformedOutputError
from ..logging import get_logger

LOG = get_logger("llm-repair")

EXCERPT_CHARS = 300
TRANSACTIONS_KEY = '"transactions"'

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_SMART_DOUBLE_QUOTES = ("“", "”", "„", "‟")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:")
_LINE_COMMENT_RE = re.compile(r"//[^\n]*")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
# Control characters other than \t \n \r are never legal JSON whitespace.
_ILLEGAL_CTRL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_STRING_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def split_segments(text: str) -> List[Tuple[bool, str]]:
    """Split text into (is_string, segment) pairs.

    String segments include their quotes. A backslash escapes the next
    character only when it is itself unescaped (odd run length). A trailing
    unterminated string is reported as a string segment.
    """
    segments: List[Tuple[bool, str]] = []
    buf: List[str] = []
    in_string = False
    backslashes = 0
    for ch in text:
        if in_string:
            buf.append(ch)
            if ch == "\\":
                backslashes += 1
                continue
            if ch == '"' and backslashes % 2 == 0:
                segments.append((True, "".join(buf)))
                buf = []
                in_string = False
            backslashes = 0
        elif ch == '"':
            if buf:
                segments.append((False, "".join(buf)))
            buf = [ch]
            in_string = True
            backslashes = 0
        else:
            buf.append(ch)
    if buf:
        segments.append((in_string, "".join(buf)))
    return segments


def _repair_string_segment(segment: str) -> str:
    out: List[str] = []
    for ch in segment:
        if ch in _STRING_ESCAPES:
            out.append(_STRING_ESCAPES[ch])
        elif ord(ch) < 0x20 or ch == "\x7f":
            continue
        else:
            out.append(ch)
    return "".join(out)


def _repair_syntax_segment(segment: str) -> str:
    fixed = _BLOCK_COMMENT_RE.sub("", segment)
    fixed = _LINE_COMMENT_RE.sub("", fixed)
    fixed = _ILLEGAL_CTRL_RE.sub("", fixed)
    fixed = _BARE_KEY_RE.sub(r'\1"\2":', fixed)
    fixed = _TRAILING_COMMA_RE.sub(r"\1", fixed)
    return fixed


def normalize_quote_delimiters(text: str) -> str:
    """Turn curly quotes used as string delimiters into ``"``.

    Outside a string a curly quote opens one; inside a string opened by a
    curly quote, the next curly quote closes it. Curly quotes inside a string
    opened by ``"`` are content and stay as they are.
    """
    out: List[str] = []
    in_string = False
    curly = False
    backslashes = 0
    for ch in text:
        if not in_string:
            if ch == '"' or ch in _SMART_DOUBLE_QUOTES:
                in_string = True
                curly = ch != '"'
                backslashes = 0
                out.append('"')
            else:
                out.append(ch)
            continue
        if ch == "\\":
            backslashes += 1
            out.append(ch)
            continue
        escaped = backslashes % 2 == 1
        backslashes = 0
        if not escaped and (ch == '"' or (curly and ch in _SMART_DOUBLE_QUOTES)):
            in_string = False
            out.append('"')
        else:
            out.append(ch)
    return "".join(out)


def repair_segments(text: str) -> str:
    """Segment-aware syntax repair; string contents are only escaped, never rewritten."""
    text = normalize_quote_delimiters(text)
    parts: List[str] = []
    for is_string, segment in split_segments(text):
        parts.append(_repair_string_segment(segment) if is_string else _repair_syntax_segment(segment))
    return "".join(parts).strip()


def _string_mask(text: str) -> List[bool]:
    mask: List[bool] = []
    for is_string, segment in split_segments(text):
        mask.extend([is_string] * len(segment))
    return mask


def _close_open_brackets(text: str) -> str:
    mask = _string_mask(text)
    stack: List[str] = []
    for i, ch in enumerate(text):
        if mask[i]:
            continue
        if ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    return text + "".join(reversed(stack))


def _is_balanced(text: str) -> bool:
    return _close_open_brackets(text) == text


def truncate_and_close(text: str) -> Optional[str]:
    """Cut a truncated payload after its last complete element and close it.

    When the text already ends on a closing bracket only the missing
    closers are appended. Otherwise, with a "transactions" key, the cut
    lands after the last element followed by a comma (a complete
    transaction); failing that, after the last ``}`` past the key. Without
    the key, after the last structural ``}`` or ``]``.
    """
    mask = _string_mask(text)
    n = len(text)
    key_idx = text.find(TRANSACTIONS_KEY)
    cut: Optional[int] = None

    # Only the closers are missing: keep everything
    last = len(text.rstrip()) - 1
    if last >= 0 and text[last] in "}]" and not mask[last]:
        return _close_open_brackets(text[: last + 1])

    if key_idx != -1:
        for i in range(n - 1, key_idx, -1):
            if text[i] != "}" or mask[i]:
                continue
            j = i + 1
            while j < n and text[j].isspace():
                j += 1
            if j < n and text[j] == "," and not mask[j]:
                cut = i
                break
        if cut is None:
            for i in range(n - 1, key_idx, -1):
                if text[i] == "}" and not mask[i]:
                    cut = i
                    break
    else:
        for i in range(n - 1, -1, -1):
            if text[i] in "}]" and not mask[i]:
                cut = i
                break

    if cut is None:
        return None
    return _close_open_brackets(text[: cut + 1])


def _try_parse(candidate: str) -> Tuple[Optional[Dict[str, Any]], Optional[Exception]]:
    try:
        value = json.loads(candidate)
    except (json.JSONDecodeError, ValueError) as exc:
        return None, exc
    if not isinstance(value, dict):
        return None, ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value, None


def parse_model_json(raw: Optional[str]) -> Dict[str, Any]:
    """Parse model output into a dict, trying progressively stronger repairs."""
    if raw is None or not str(raw).strip():
        raise EmptyResponseError("Model returned an empty response")

    last_error: Optional[Exception] = None

    # Tier 1: fences removed, direct parse
    cleaned = strip_code_fences(str(raw))
    value, last_error = _try_parse(cleaned)
    if value is not None:
        return value

    # Tier 2: skip leading prose
    start = cleaned.find("{")
    candidate = cleaned[start:] if start != -1 else cleaned
    if start != -1:
        value, err = _try_parse(candidate)
        if value is not None:
            return value
        end = candidate.rfind("}")
        if end != -1:
            value, err = _try_parse(candidate[: end + 1])
            if value is not None:
                LOG.debug("Parsed JSON after dropping leading/trailing prose")
                return value
        last_error = err or last_error

    # Tier 3: segment-aware repair, with and without trailing prose
    repaired = repair_segments(candidate)
    attempts = [repaired]
    end = candidate.rfind("}")
    if end != -1 and end < len(candidate.rstrip()) - 1:
        attempts.append(repair_segments(candidate[: end + 1]))
    for attempt in attempts:
        value, err = _try_parse(attempt)
        if value is not None:
            LOG.warning("Model JSON needed syntax repair (%d chars)", len(attempt))
            return value
        last_error = err or last_error

    # Tier 4: truncation
    if not repaired.endswith("}") or not _is_balanced(repaired):
        truncated = truncate_and_close(repaired)
        if truncated is not None:
            value, err = _try_parse(truncated)
            if value is not None:
                LOG.warning(
                    "Model JSON was truncated; kept %d of %d chars",
                    len(truncated),
                    len(repaired),
                )
                return value
            last_error = err or last_error

    excerpt = cleaned[:EXCERPT_CHARS]
    LOG.error("JSON repair failed: %s; first %d chars: %r", last_error, EXCERPT_CHARS, excerpt)
    raise MalformedOutputError("Model output is not valid JSON", last_error=last_error, excerpt=excerpt)
