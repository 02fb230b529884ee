"""Allowed-path discovery for one edit attempt.

The model may only rewrite files from this set, so it is built from evidence in the
repository (search hits, filename patterns, source allow-list) and never from the
model's own suggestions.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Protocol

from shepherd.models.errors import CommandError
from shepherd.services.repo_checks_service import is_lockfile

logger = logging.getLogger(__name__)

RUN_DOCS_PREFIX = "docs/shepherd/"
MAX_ALLOWED_PATHS = 250
MAX_HINTS = 12
MAX_GREP_PATHS_PER_HINT = 20
MIN_HINT_LENGTH = 3

KNOWN_KEYWORDS: tuple[str, ...] = (
    "landing page",
    "benefit",
    "benefits",
    "copy",
    "subtitle",
    "headline",
    "onboarding",
    "settings",
    "paywall",
    "dark mode",
    "theme",
    "toggle",
    "login",
    "signup",
    "RevenueCat",
    "Mixpanel",
    "Supabase",
)

# concern keyword pattern -> filename pattern it makes relevant
CONCERN_FILENAME_PATTERNS: tuple[tuple[re.Pattern[str], re.Pattern[str]], ...] = (
    (re.compile(r"\b(ui|screen|button|toggle|layout|theme|dark mode|component)\b", re.I),
     re.compile(r"(^|/)(components?|screens?|ui|theme|styles?|layouts?)(/|\.|$)|(^|/)_layout\.", re.I)),
    (re.compile(r"benefit", re.I), re.compile(r"(^|/)[^/]*benefit", re.I)),
    (re.compile(r"landing|home ?page|welcome|hero", re.I), re.compile(r"(^|/)(landing|home|welcome|hero|index)", re.I)),
    (re.compile(r"\b(auth|login|log in|sign[ -]?in|sign[ -]?up|password|session)\b", re.I),
     re.compile(r"(^|/)[^/]*(auth|login|signin|sign-in|signup|session)", re.I)),
    (re.compile(r"telemetry|analytics|tracking|mixpanel|event", re.I),
     re.compile(r"(^|/)[^/]*(analytics|telemetry|tracking|mixpanel|events?)", re.I)),
    (re.compile(r"payment|paywall|subscription|purchase|billing|revenuecat|checkout", re.I),
     re.compile(r"(^|/)[^/]*(paywall|payment|subscription|purchase|billing|revenuecat|checkout)", re.I)),
)

SOURCE_EXTENSIONS = frozenset(
    {
        ".py", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs", ".vue", ".svelte",
        ".css", ".scss", ".html", ".json", ".yaml", ".yml", ".toml", ".go", ".rs",
        ".rb", ".java", ".kt", ".swift", ".sql", ".sh",
    }
)
SOURCE_TOP_DIRS = frozenset(
    {"src", "app", "lib", "components", "screens", "pages", "hooks", "utils", "backend", "api", "server", "web"}
)

FALLBACK_ENTRYPOINTS: tuple[str, ...] = (
    "app/index.tsx",
    "app/(tabs)/index.tsx",
    "app/_layout.tsx",
    "src/App.tsx",
    "src/index.ts",
    "src/main.py",
    "main.py",
    "index.js",
)

_QUOTED_RE = re.compile(r"[\"“”'`]([^\"“”'`\n]{3,60})[\"“”'`]")
_PATHLIKE_RE = re.compile(r"\b[\w.-]+(?:/[\w.()\[\]-]+)+\.[a-zA-Z]{1,5}\b|\b[\w-]+\.(?:tsx?|jsx?|py|json|ya?ml|css)\b")
_IDENT_RE = re.compile(r"\b[A-Za-z]+(?:[A-Z][a-z0-9]+)+\b|\b[a-z0-9]+(?:_[a-z0-9]+)+\b")


class RepoSearch(Protocol):
    def ls_files(self, limit: int = ...) -> list[str]: ...

    def grep_files(self, term: str, timeout: float = ...) -> list[str]: ...


def is_run_doc(rel_path: str) -> bool:
    return rel_path.lstrip("/").startswith(RUN_DOCS_PREFIX)


def extract_hints(text: str, limit: int = MAX_HINTS) -> list[str]:
    """Search terms from free text: known keywords, quoted literals, paths, identifiers."""
    body = str(text or "")
    lowered = body.lower()
    hints: list[str] = []
    for keyword in KNOWN_KEYWORDS:
        if keyword.lower() in lowered:
            hints.append(keyword)
    for pattern in (_QUOTED_RE, _PATHLIKE_RE, _IDENT_RE):
        for m in pattern.finditer(body):
            token = (m.group(1) if m.groups() else m.group(0)).strip()
            if len(token) >= MIN_HINT_LENGTH:
                hints.append(token)
    seen: set[str] = set()
    out: list[str] = []
    for hint in hints:
        key = hint.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(hint)
    return out[:limit]


def filename_pattern_matches(files: Iterable[str], text: str) -> list[str]:
    patterns = [name_re for concern_re, name_re in CONCERN_FILENAME_PATTERNS if concern_re.search(text or "")]
    if not patterns:
        return []
    return [path for path in files if any(p.search(path) for p in patterns)]


def broad_source_paths(files: Iterable[str]) -> list[str]:
    out: list[str] = []
    for path in files:
        top = path.split("/", 1)[0] if "/" in path else ""
        ext = "." + path.rsplit(".", 1)[-1].lower() if "." in path.rsplit("/", 1)[-1] else ""
        if ext in SOURCE_EXTENSIONS or top in SOURCE_TOP_DIRS:
            out.append(path)
    return out


def _excluded(path: str) -> bool:
    return is_run_doc(path) or is_lockfile(path)


def compute_allowed_paths(repo: RepoSearch, text: str, cap: int = MAX_ALLOWED_PATHS) -> list[str]:
    """Ordered allowed-path set: search hits, concern filenames, then source allow-list."""
    files = repo.ls_files()
    tracked = set(files)

    grep_hits: list[str] = []
    for hint in extract_hints(text):
        try:
            hits = repo.grep_files(hint)
        except CommandError as exc:
            logger.info("grep for hint %r failed: %s", hint, exc)
            continue
        grep_hits.extend(h for h in hits[:MAX_GREP_PATHS_PER_HINT] if h in tracked)

    ordered: list[str] = []
    seen: set[str] = set()
    for path in [*grep_hits, *filename_pattern_matches(files, text), *broad_source_paths(files)]:
        if path in seen or _excluded(path):
            continue
        seen.add(path)
        ordered.append(path)
        if len(ordered) >= cap:
            break

    if not ordered:
        ordered = [p for p in FALLBACK_ENTRYPOINTS if p in tracked]
    return ordered
