from __future__ import annotations

import re
from dataclasses import dataclass

from page_watch.models import PATTERN_TYPES


SNIPPET_CONTEXT_CHARS = 50


class PatternError(ValueError):
    """The pattern itself cannot be evaluated (bad regex, unknown pattern type)."""


@dataclass(frozen=True)
class PatternMatch:
    matched: bool
    snippet: str | None = None


def _snippet_around(content: str, start: int, end: int, *, context: int = SNIPPET_CONTEXT_CHARS) -> str:
    # Trim only the surrounding context so the matched text always survives intact.
    before = content[max(0, start - context) : start].lstrip()
    after = content[end : end + context].rstrip()
    return before + content[start:end] + after


def evaluate(content: str, pattern: str, pattern_type: str) -> PatternMatch:
    """
    Test page content against a monitor pattern.

    - contains: case-insensitive substring; snippet around the first occurrence
    - not_contains: matched iff the substring is absent; never a snippet
    - regex: case-insensitive search; snippet around the first match

    Raises PatternError for an invalid regex or an unsupported pattern type.
    """
    text = content or ""
    kind = str(pattern_type or "").strip().lower()

    if kind in ("contains", "not_contains"):
        m = re.search(re.escape(pattern or ""), text, flags=re.IGNORECASE)
        if kind == "not_contains":
            return PatternMatch(matched=m is None)
        if m is None:
            return PatternMatch(matched=False)
        return PatternMatch(matched=True, snippet=_snippet_around(text, m.start(), m.end()))

    if kind == "regex":
        try:
            compiled = re.compile(pattern or "", flags=re.IGNORECASE)
        except re.error as exc:
            raise PatternError(f"Invalid regex pattern: {exc}") from exc
        m = compiled.search(text)
        if m is None:
            return PatternMatch(matched=False)
        return PatternMatch(matched=True, snippet=_snippet_around(text, m.start(), m.end()))

    raise PatternError(f"Unsupported pattern type: {pattern_type!r} (expected one of {', '.join(PATTERN_TYPES)})")
