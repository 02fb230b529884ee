"""Autoheal memory: which error signatures were already attempted per item."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class AutohealAttempt(BaseModel):
    attempted_at: datetime
    applied: bool = False
    fix: str = ""


class AutohealRecord(BaseModel):
    item_id: str
    last_stage: str = ""
    last_error_signature: str = ""
    attempts: dict[str, AutohealAttempt] = Field(default_factory=dict)

    def has_attempted(self, signature: str) -> bool:
        return signature in self.attempts


class AutohealState(BaseModel):
    items: dict[str, AutohealRecord] = Field(default_factory=dict)
