"""Run artifacts: append-only event log plus whole-file snapshot documents.

Layout: ``<root>/runs/<run_id>/EVENTS.md`` and one Markdown file per snapshot kind.
Artifact writes are best-effort; a failing disk never aborts a stage handler.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

REDACT_THRESHOLD = 500
REDACT_KEEP = 400

SNAPSHOT_FILES = {
    "status": "STATUS.md",
    "prd": "PRD.md",
    "plan": "IMPLEMENTATION_PLAN.md",
    "implementation": "IMPLEMENTATION.md",
    "patch": "PATCH.diff.md",
    "review": "REVIEW.md",
    "scope": "SCOPE.md",
    "scope_dev": "SCOPE_DEV.md",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def redact_if_needed(text: Any, redact: bool) -> str:
    value = "" if text is None else str(text)
    if not redact or len(value) <= REDACT_THRESHOLD:
        return value
    return value[:REDACT_KEEP] + "\n\n[REDACTED]\n"


class ArtifactWriter:
    def __init__(self, root: str | Path, redact: bool = True) -> None:
        self.root = Path(root)
        self.redact = redact

    def run_dir(self, run_id: str) -> Path:
        return self.root / "runs" / run_id

    def event(self, run_id: str, kind: str, text: str, redact: Optional[bool] = None) -> None:
        body = redact_if_needed(text, self.redact if redact is None else redact).replace("\n", " ")
        line = f"- {_now_iso()} **{kind}** - {body}\n"
        try:
            path = self.run_dir(run_id) / "EVENTS.md"
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        except OSError as exc:
            logger.warning("event write failed run=%s kind=%s: %s", run_id, kind, exc)

    def snapshot(self, run_id: str, kind: str, text: str, redact: Optional[bool] = None) -> None:
        name = SNAPSHOT_FILES[kind]
        body = redact_if_needed(text, self.redact if redact is None else redact)
        try:
            path = self.run_dir(run_id) / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(body, encoding="utf-8")
        except OSError as exc:
            logger.warning("snapshot write failed run=%s file=%s: %s", run_id, name, exc)

    def status(
        self,
        run_id: str,
        *,
        stage_label: str,
        repo: str = "",
        tracker_url: str = "",
        issue_url: str = "",
        pr_url: str = "",
    ) -> None:
        lines = ["# STATUS", "", f"- Updated: {_now_iso()}", f"- Status: **{stage_label}**"]
        if repo:
            lines.append(f"- Target repo: `{repo}`")
        if tracker_url:
            lines.append(f"- Tracker: {tracker_url}")
        if issue_url:
            lines.append(f"- GitHub Issue: {issue_url}")
        if pr_url:
            lines.append(f"- GitHub PR: {pr_url}")
        lines.append("")
        self.snapshot(run_id, "status", "\n".join(lines), redact=False)

    def scope(self, run_id: str, scope_json: Any, kind: str = "scope") -> None:
        md = "\n".join(
            [
                "# Scope triage",
                "",
                f"- Updated: {_now_iso()}",
                "",
                "```json",
                json.dumps(scope_json if scope_json is not None else {}, indent=2, default=str),
                "```",
                "",
            ]
        )
        self.snapshot(run_id, kind, md)
