"""Failure taxonomy for items parked in the Error stage.

Order matters: the first matching pattern wins.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any

SIGNATURE_TEXT_LIMIT = 500

LLM_AUTH_OR_QUOTA = "llm_auth_or_quota"
TRACKER_MISSING_OPTION = "tracker_missing_option"
UNKNOWN = "unknown"

_PATTERNS: list[tuple[re.Pattern[str], str, bool, str]] = [
    (
        re.compile(
            r"insufficient_quota|invalid_api_key|incorrect api key|openai_api_key"
            r"|openai[^\n]{0,80}(status[=: ]?(401|429)|unauthorized|quota|rate limit)"
            r"|llm[^\n]{0,80}(status[=: ]?(401|429)|unauthorized|quota)"
            r"|exceeded your current quota|billing_hard_limit",
            re.I,
        ),
        LLM_AUTH_OR_QUOTA,
        False,
        "LLM provider rejected the credentials or the account is out of quota; needs a human.",
    ),
    (
        re.compile(
            r"(status|select) option\W+[^\n]{0,120}?(does not exist|not found|is not a valid)"
            r"|invalid (status|select) option",
            re.I,
        ),
        TRACKER_MISSING_OPTION,
        True,
        "Tracker rejected a write because a single-choice field lacks the option.",
    ),
]

_OPTION_NAME_RE = re.compile(r"(?:status|select) option\W+\"?([^\"\\\n]{1,100}?)\\?\"?\s+(?:does not exist|not found|is not a valid)", re.I)
_FIELD_NAME_RE = re.compile(r"(?:property|field)\W+\"?([^\"\\\n]{1,100}?)\\?\"?(?:[\s.,:]|$)", re.I)


def _clean(value: Any) -> str:
    return str(value or "").strip()


def error_signature(error_text: str) -> str:
    """Stable fingerprint of an error: sha1 over the whitespace-normalized head."""
    normalized = " ".join(_clean(error_text)[:SIGNATURE_TEXT_LIMIT].split())
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]


def classify_error(error_text: str) -> dict[str, Any]:
    text = _clean(error_text)
    if not text:
        return {
            "bucket": UNKNOWN,
            "fixable": False,
            "summary": "Item is in Error without diagnostic text.",
            "signature": error_signature(text),
        }

    for pattern, bucket, fixable, summary in _PATTERNS:
        if not pattern.search(text):
            continue
        out: dict[str, Any] = {
            "bucket": bucket,
            "fixable": fixable,
            "summary": summary,
            "signature": error_signature(text),
        }
        if bucket == TRACKER_MISSING_OPTION:
            option = _OPTION_NAME_RE.search(text)
            field = _FIELD_NAME_RE.search(text)
            out["option"] = option.group(1).strip() if option else ""
            out["field"] = field.group(1).strip() if field else ""
        return out

    return {
        "bucket": UNKNOWN,
        "fixable": False,
        "summary": "No known safe remediation; left for human review.",
        "signature": error_signature(text),
    }
