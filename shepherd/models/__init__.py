"""Pydantic models."""

from shepherd.models.autoheal import AutohealAttempt, AutohealRecord, AutohealState
from shepherd.models.edit import EditAttempt, EditProposal, EditResult, FileEdit
from shepherd.models.work_item import GitRef, Stage, WorkItem
from shepherd.models.work_package import PrdDraft, ScopeDecision, ScopePlan, WorkPackage
