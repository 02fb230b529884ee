from __future__ import annotations

import re
from pathlib import Path

from shepherd.services.artifact_service import ArtifactWriter, redact_if_needed


def test_event_appends_one_line_per_call(tmp_path: Path) -> None:
    writer = ArtifactWriter(tmp_path, redact=False)

    writer.event("run-1", "STATUS", "Intake -> PRD Drafted")
    writer.event("run-1", "ERROR", "boom\nsecond line")

    lines = (tmp_path / "runs" / "run-1" / "EVENTS.md").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert re.match(r"^- \d{4}-\d{2}-\d{2}T\S+ \*\*STATUS\*\* - Intake -> PRD Drafted$", lines[0])
    assert lines[1].endswith("**ERROR** - boom second line")


def test_snapshots_are_whole_file_replacements(tmp_path: Path) -> None:
    writer = ArtifactWriter(tmp_path, redact=False)

    writer.snapshot("run-1", "prd", "first")
    writer.snapshot("run-1", "prd", "second")

    assert (tmp_path / "runs" / "run-1" / "PRD.md").read_text(encoding="utf-8") == "second"


def test_redaction_truncates_long_text(tmp_path: Path) -> None:
    writer = ArtifactWriter(tmp_path, redact=True)

    writer.snapshot("run-1", "review", "r" * 2000)
    writer.status("run-1", stage_label="In Review", repo="acme/app", pr_url="https://github.com/acme/app/pull/2")

    review = (tmp_path / "runs" / "run-1" / "REVIEW.md").read_text(encoding="utf-8")
    status = (tmp_path / "runs" / "run-1" / "STATUS.md").read_text(encoding="utf-8")
    assert review.startswith("r" * 400)
    assert review.endswith("[REDACTED]\n")
    assert "- Status: **In Review**" in status
    assert "- GitHub PR: https://github.com/acme/app/pull/2" in status
    assert "- GitHub Issue" not in status


def test_redact_if_needed_leaves_short_text_alone() -> None:
    assert redact_if_needed("short", True) == "short"
    assert redact_if_needed(None, True) == ""
    assert redact_if_needed("x" * 900, False) == "x" * 900


def test_scope_snapshot_renders_json(tmp_path: Path) -> None:
    writer = ArtifactWriter(tmp_path, redact=False)

    writer.scope("run-1", {"decision": "split"}, kind="scope_dev")

    body = (tmp_path / "runs" / "run-1" / "SCOPE_DEV.md").read_text(encoding="utf-8")
    assert '"decision": "split"' in body


def test_write_failures_are_swallowed(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way", encoding="utf-8")
    writer = ArtifactWriter(blocker)

    writer.event("run-1", "STATUS", "x")
    writer.snapshot("run-1", "prd", "x")

    assert blocker.read_text(encoding="utf-8") == "file in the way"
