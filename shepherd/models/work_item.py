"""Work item models: the card moving through the pipeline."""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field


class Stage(str, Enum):
    INTAKE = "Intake"
    PRD_DRAFTED = "PRDDrafted"
    READY_FOR_DEV = "ReadyForDev"
    IN_DEV = "InDev"
    IN_REVIEW = "InReview"
    NEEDS_CHANGES = "NeedsChanges"
    READY_TO_MERGE = "ReadyToMerge"
    DONE = "Done"
    ERROR = "Error"
    EPIC = "Epic"


# Tracker labels used when no override is configured.
DEFAULT_STAGE_LABELS: dict[Stage, str] = {
    Stage.INTAKE: "Intake",
    Stage.PRD_DRAFTED: "PRD Drafted",
    Stage.READY_FOR_DEV: "Ready for Dev",
    Stage.IN_DEV: "In Dev",
    Stage.IN_REVIEW: "In Review",
    Stage.NEEDS_CHANGES: "Needs Changes",
    Stage.READY_TO_MERGE: "Ready to Merge",
    Stage.DONE: "Done",
    Stage.ERROR: "Error",
    Stage.EPIC: "Epic",
}

_ISSUE_URL_RE = re.compile(r"github\.com/([^/\s]+)/([^/\s]+)/issues/(\d+)")
_PR_URL_RE = re.compile(r"github\.com/([^/\s]+)/([^/\s]+)/pull/(\d+)")


class GitRef(NamedTuple):
    owner: str
    repo: str
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_issue_url(url: str | None) -> Optional[GitRef]:
    m = _ISSUE_URL_RE.search(str(url or ""))
    if not m:
        return None
    return GitRef(m.group(1), m.group(2), int(m.group(3)))


def parse_pr_url(url: str | None) -> Optional[GitRef]:
    m = _PR_URL_RE.search(str(url or ""))
    if not m:
        return None
    return GitRef(m.group(1), m.group(2), int(m.group(3)))


def safe_slug(value: str, limit: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(value or "").lower()).strip("-")
    return slug[:limit].strip("-")


def new_run_id(title: str = "", now: datetime | None = None) -> str:
    """Return ``YYYYMMDD-<slug>-<hex4>``; stable once written back to the item."""
    moment = now or datetime.now(timezone.utc)
    slug = safe_slug(title) or "work"
    return f"{moment:%Y%m%d}-{slug}-{secrets.token_hex(2)}"


def branch_name_for_run(run_id: str) -> str:
    return f"shepherd/{run_id}"


class WorkItem(BaseModel):
    """A tracker card as seen by the engine. Mutated only through the tracker client."""

    id: str = Field(min_length=1)
    title: str = ""
    rough_description: str = ""
    target_repository: str = ""
    stage: Stage = Stage.INTAKE
    run_id: str = ""
    issue_url: str = ""
    pr_url: str = ""
    latest_feedback: str = ""
    last_error: str = ""
    url: str = ""
    archived: bool = False
    parent_ids: list[str] = Field(default_factory=list)
    child_ids: list[str] = Field(default_factory=list)
    has_relation_fields: bool = False
    merge_approved: bool = False

    def issue_ref(self) -> Optional[GitRef]:
        return parse_issue_url(self.issue_url)

    def pr_ref(self) -> Optional[GitRef]:
        return parse_pr_url(self.pr_url)

    def repository(self) -> str:
        ref = self.issue_ref()
        if ref is not None:
            return ref.full_name
        return self.target_repository.strip()

    @property
    def is_child(self) -> bool:
        return bool(self.parent_ids)
