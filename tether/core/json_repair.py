"""
tether.core.json_repair — Close up JSON that was cut off mid-stream.

Streamed tool arguments can end early (max_tokens, dropped connection).
``repair()`` makes a best effort to turn the prefix into valid JSON by
closing an open string, dropping dangling commas and partial escapes, and
closing every open bracket.  It never invents keys or values.
"""

from __future__ import annotations

import json
import re
from typing import Any

_CLOSERS = {"{": "}", "[": "]"}

# An unfinished \uXXXX escape at the very end of the text
_PARTIAL_UNICODE_RE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")


def _strip_trailing_comma(out: list[str]) -> None:
    while out and out[-1].isspace():
        out.pop()
    if out and out[-1] == ",":
        out.pop()


def _ends_with_partial_unicode(out: list[str]) -> bool:
    tail = "".join(out[-6:])
    match = _PARTIAL_UNICODE_RE.search(tail)
    if match is None:
        return False
    # The backslash must itself be unescaped: count the run in front of it.
    start = len(out) - (len(tail) - match.start())
    run = 0
    i = start - 1
    while i >= 0 and out[i] == "\\":
        run += 1
        i -= 1
    return run % 2 == 0


def repair(text: str) -> str:
    """Return *text* completed into syntactically valid JSON where possible."""
    if not text.strip():
        return "{}"

    out: list[str] = []
    stack: list[str] = []
    in_string = False
    escape = False

    for ch in text:
        if escape:
            escape = False
            out.append(ch)
            continue
        if in_string:
            if ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            _strip_trailing_comma(out)
            # A mismatched closer also closes the inner container.
            if stack and _CLOSERS[stack[-1]] != ch:
                stack.pop()
            if stack:
                stack.pop()
        out.append(ch)

    if in_string:
        if escape:
            out.pop()
        elif _ends_with_partial_unicode(out):
            while out[-1] != "\\":
                out.pop()
            out.pop()
        out.append('"')

    _strip_trailing_comma(out)
    # Drop a dangling key separator: {"a": -> {"a": null}
    if out and out[-1] == ":":
        out.append(" null")

    for opener in reversed(stack):
        out.append(_CLOSERS[opener])

    return "".join(out) or "{}"


def loads(text: str) -> Any:
    """``json.loads`` with one repair attempt.  Raises ``ValueError`` on failure."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return json.loads(repair(text))


def try_loads(text: str) -> Any | None:
    try:
        return loads(text)
    except ValueError:
        return None
