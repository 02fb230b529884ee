"""Edit loop models."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

MAX_FILES_PER_PROPOSAL = 5


class FileEdit(BaseModel):
    path: str
    content: str


class EditProposal(BaseModel):
    files: list[FileEdit] = Field(default_factory=list)


class EditAttempt(BaseModel):
    """One iteration of the edit loop. Never persisted beyond the resulting diff."""

    package_name: str = ""
    iteration: int = 1
    allowed_paths: list[str] = Field(default_factory=list)
    proposed_files: dict[str, str] = Field(default_factory=dict)
    previous_error: str = ""
    ok: bool = False
    reason: Optional[str] = None


class EditResult(BaseModel):
    ok: bool
    patch: str = ""
    diff_stat: str = ""
    changed_files: list[str] = Field(default_factory=list)
    error: str = ""
    attempts: list[EditAttempt] = Field(default_factory=list)
