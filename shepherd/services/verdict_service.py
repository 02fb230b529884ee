"""Review verdict parsing."""

from __future__ import annotations

import re
from enum import Enum


class Verdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNKNOWN = "UNKNOWN"


_EMPHASIS_RE = re.compile(r"[*_`]")
# Headings, bullets and quotes may precede the token.
_VERDICT_LINE_RE = re.compile(r"^[\s>#\-]*Verdict\s*:\s*(PASS|FAIL)\b", re.IGNORECASE | re.MULTILINE)


def parse_verdict(review_markdown: str | None) -> Verdict:
    """Return the first line-anchored ``Verdict: PASS|FAIL``; UNKNOWN when absent.

    Reviewers are told to emit a plain first line, but markdown emphasis such as
    ``**Verdict: FAIL**`` or ``## Verdict: **PASS**`` is tolerated.
    """
    cleaned = _EMPHASIS_RE.sub("", str(review_markdown or ""))
    m = _VERDICT_LINE_RE.search(cleaned)
    if not m:
        return Verdict.UNKNOWN
    return Verdict(m.group(1).upper())


def is_pass(review_markdown: str | None) -> bool:
    return parse_verdict(review_markdown) == Verdict.PASS
