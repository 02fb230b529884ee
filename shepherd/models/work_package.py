"""Scope plan models produced by the package planner."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class ScopeDecision(str, Enum):
    SINGLE = "single"
    SPLIT = "split"


class WorkPackage(BaseModel):
    name: str = ""
    goal: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    likely_areas: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    risk: str = ""


class ScopePlan(BaseModel):
    decision: ScopeDecision = ScopeDecision.SINGLE
    rationale: str = ""
    packages: list[WorkPackage] = Field(default_factory=list)

    @property
    def is_split(self) -> bool:
        return self.decision == ScopeDecision.SPLIT and len(self.packages) > 1


class PrdDraft(BaseModel):
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
