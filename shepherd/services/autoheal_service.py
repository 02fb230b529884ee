"""Autoheal for items parked in Error.

Each distinct error (by signature) is attempted at most once per item; the memory
of attempts lives in a JSON state file so re-running a tick never repeats a fix.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from shepherd.models.autoheal import AutohealAttempt, AutohealRecord, AutohealState
from shepherd.models.errors import TrackerError
from shepherd.models.work_item import Stage, WorkItem
from shepherd.services import failure_taxonomy_service
from shepherd.services.artifact_service import ArtifactWriter
from shepherd.services.bot_config import BotConfig

logger = logging.getLogger(__name__)

STATE_FILENAME = "autoheal.json"

APPLIED = "applied"
NOT_APPLIED = "not_applied"
NEEDS_HUMAN = "needs_human"
SKIPPED = "skipped"
NO_ERROR = "no_error"


class AutohealStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> AutohealState:
        if not self.path.exists():
            return AutohealState()
        try:
            return AutohealState.model_validate(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("autoheal state unreadable at %s: %s", self.path, exc)
            return AutohealState()

    def save(self, state: AutohealState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("autoheal state write failed at %s: %s", self.path, exc)


def recovered_stage(item: WorkItem, failed_stage: str) -> Stage:
    """Where to resume after a fix, inferred from the references the item already holds."""
    if item.pr_ref() is not None:
        return Stage.IN_REVIEW
    if item.issue_ref() is not None:
        if failed_stage in (Stage.READY_FOR_DEV.value, Stage.NEEDS_CHANGES.value):
            return Stage(failed_stage)
        return Stage.PRD_DRAFTED
    return Stage.INTAKE


class Autohealer:
    def __init__(
        self,
        config: BotConfig,
        tracker: Any,
        artifacts: ArtifactWriter,
        store: Optional[AutohealStore] = None,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.artifacts = artifacts
        self.store = store or AutohealStore(config.state_dir / STATE_FILENAME)

    def record_failure(self, item_id: str, stage: Stage) -> None:
        """Remember the stage an item failed in; the recovered stage is inferred from it."""
        state = self.store.load()
        record = state.items.get(item_id) or AutohealRecord(item_id=item_id)
        record.last_stage = stage.value
        state.items[item_id] = record
        self.store.save(state)

    def heal(self, item: WorkItem) -> str:
        error_text = item.last_error.strip()
        if not error_text:
            return NO_ERROR

        info = failure_taxonomy_service.classify_error(error_text)
        signature = str(info["signature"])
        state = self.store.load()
        record = state.items.get(item.id) or AutohealRecord(item_id=item.id)
        if record.has_attempted(signature):
            return SKIPPED
        record.last_error_signature = signature

        bucket = info["bucket"]
        run_id = item.run_id or f"item-{item.id}"
        if bucket == failure_taxonomy_service.TRACKER_MISSING_OPTION:
            outcome, fix = self._fix_missing_option(item, info, record.last_stage)
        elif bucket == failure_taxonomy_service.LLM_AUTH_OR_QUOTA:
            logger.warning("autoheal: item %s needs LLM credentials or quota: %s", item.id, error_text[:200])
            outcome, fix = NEEDS_HUMAN, "LLM credentials or quota; no automatic fix"
        else:
            outcome, fix = NEEDS_HUMAN, "no safe automatic fix"
            self._note(item, f"Autoheal: {info['summary']}\n\nLast error:\n{error_text[:1500]}")

        record.attempts[signature] = AutohealAttempt(
            attempted_at=datetime.now(timezone.utc),
            applied=outcome == APPLIED,
            fix=fix,
        )
        state.items[item.id] = record
        self.store.save(state)
        self.artifacts.event(run_id, "AUTOHEAL", f"{bucket}: {outcome} ({fix})")
        return outcome

    def _fix_missing_option(self, item: WorkItem, info: dict[str, Any], last_stage: str) -> tuple[str, str]:
        fields = self.config.fields
        field = str(info.get("field") or "") or fields.stage
        if field == fields.stage:
            names = list(self.config.stage_labels.values())
        else:
            names = [str(info.get("option") or "")]
        if not any(names):
            self._note(item, f"Autoheal: could not tell which option {field!r} is missing; add it manually.")
            return NOT_APPLIED, f"unknown option for {field}"

        try:
            added = self.tracker.ensure_select_options(field, names)
        except TrackerError as exc:
            logger.warning("autoheal: ensure options on %r failed: %s", field, exc)
            return NOT_APPLIED, f"ensure options on {field} failed: {exc}"
        if not added:
            self._note(item, f"Autoheal: field {field!r} cannot take new options; add {names} manually.")
            return NOT_APPLIED, f"{field} does not accept new options"

        target = recovered_stage(item, last_stage)
        try:
            self.tracker.set_last_error(item.id, "")
            self.tracker.set_stage(item.id, target)
        except TrackerError as exc:
            logger.warning("autoheal: resuming item %s failed: %s", item.id, exc)
            return NOT_APPLIED, f"options ensured on {field}; resume failed: {exc}"
        logger.info("autoheal: item %s recovered to %s", item.id, target.value)
        return APPLIED, f"ensured options on {field}; resumed at {target.value}"

    def _note(self, item: WorkItem, text: str) -> None:
        try:
            self.tracker.set_feedback(item.id, text)
        except TrackerError as exc:
            logger.warning("autoheal note failed for %s: %s", item.id, exc)
