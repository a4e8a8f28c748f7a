"""Two-stage JSON reader for model output.

Stage 1 strips markdown code fences and parses strictly. Stage 2 scans for the
first balanced object/array that parses. The result is a typed value so
callers can tell an empty reply apart from garbage.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional, Union

from tablecrm.errors import ParseError

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?|\n?\s*```")


@dataclass(frozen=True)
class Parsed:
    value: Any


@dataclass(frozen=True)
class ParseFailure:
    reason: Literal["empty", "malformed"]
    raw: str = ""


ParseOutcome = Union[Parsed, ParseFailure]


def _strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _balanced_candidates(text: str):
    """Yield substrings that start at '{' or '[' and end at the matching bracket."""
    pairs = {"{": "}", "[": "]"}
    for start, ch in enumerate(text):
        if ch not in pairs:
            continue
        stack = [pairs[ch]]
        in_str = False
        escaped = False
        for i in range(start + 1, len(text)):
            c = text[i]
            if in_str:
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    in_str = False
                continue
            if c == '"':
                in_str = True
            elif c in pairs:
                stack.append(pairs[c])
            elif c in ("}", "]"):
                if c != stack[-1]:
                    break
                stack.pop()
                if not stack:
                    yield text[start : i + 1]
                    break


def extract_json(text: Optional[str]) -> ParseOutcome:
    raw = text or ""
    if not raw.strip():
        return ParseFailure("empty", raw)
    cleaned = _strip_fences(raw)
    try:
        return Parsed(json.loads(cleaned))
    except (json.JSONDecodeError, ValueError):
        pass
    for candidate in _balanced_candidates(raw):
        try:
            return Parsed(json.loads(candidate))
        except (json.JSONDecodeError, ValueError):
            continue
    return ParseFailure("malformed", raw)


def expect_object(text: Optional[str]) -> dict:
    """Parse ``text`` and require a JSON object; raise ParseError otherwise."""
    parsed = extract_json(text)
    if isinstance(parsed, ParseFailure):
        raise ParseError(f"unreadable reply ({parsed.reason})", raw=parsed.raw)
    if not isinstance(parsed.value, dict):
        raise ParseError(f"expected a JSON object, got {type(parsed.value).__name__}", raw=text or "")
    return parsed.value
