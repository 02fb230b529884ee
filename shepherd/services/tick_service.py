"""One tick of the bot: gate on the control card, then walk the stage queues.

The tick is the unit of scheduling. It is safe to run again at any time: every
handler checks recorded references before creating anything, and an item seen once
in a tick is not handled again in the same tick.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from dateutil import parser as date_parser

from shepherd.adapters.tracker_client import read_checkbox, read_date_start, read_number
from shepherd.models.errors import ShepherdError
from shepherd.models.work_item import Stage, WorkItem
from shepherd.services.artifact_service import ArtifactWriter
from shepherd.services.autoheal_service import Autohealer
from shepherd.services.bot_config import BotConfig
from shepherd.services.transition_engine import TransitionEngine

logger = logging.getLogger(__name__)

STAGE_ORDER: tuple[Stage, ...] = (
    Stage.INTAKE,
    Stage.READY_FOR_DEV,
    Stage.NEEDS_CHANGES,
    Stage.IN_REVIEW,
    Stage.READY_TO_MERGE,
)
SESSION_BUDGET_FILENAME = "llm_session.json"


@dataclass(frozen=True)
class ControlCard:
    page_id: str = ""
    enabled: bool = True
    interval_min: int = 0
    run_now: bool = False
    last_run: Optional[datetime] = None


def _parse_iso(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def read_control_card(tracker: Any, config: BotConfig) -> ControlCard:
    """Master switch and cadence.

    A missing or unreadable card means enabled. On a card that exists, an absent
    flow checkbox reads as off.
    """
    fields = config.fields
    try:
        pages = tracker.query_pages_by_title(config.control_card_title)
    except ShepherdError as exc:
        logger.warning("control card unreadable, assuming enabled: %s", exc)
        return ControlCard()
    except Exception:
        logger.exception("control card unreadable, assuming enabled")
        return ControlCard()
    if not pages:
        return ControlCard()
    page = pages[0]
    interval = read_number(page, fields.tick_interval) or 0
    return ControlCard(
        page_id=str(page.get("id") or ""),
        enabled=read_checkbox(page, fields.flow_enabled),
        interval_min=max(0, int(round(interval))),
        run_now=read_checkbox(page, fields.run_now),
        last_run=_parse_iso(read_date_start(page, fields.last_run)),
    )


def too_soon(card: ControlCard, now: datetime) -> bool:
    if card.run_now or card.interval_min <= 0 or card.last_run is None:
        return False
    return now - card.last_run < timedelta(minutes=card.interval_min)


class LlmBudget:
    """Per-tick LLM action allowance plus an optional cumulative cap persisted across ticks."""

    def __init__(self, per_tick: int, session_limit: int = 0, state_path: Optional[Path] = None) -> None:
        self.per_tick = max(0, per_tick)
        self.session_limit = max(0, session_limit)
        self.state_path = state_path
        self.used_this_tick = 0

    def _session_used(self) -> int:
        if self.state_path is None or not self.state_path.exists():
            return 0
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("session budget unreadable at %s: %s", self.state_path, exc)
            return 0
        used = data.get("used") if isinstance(data, dict) else None
        return used if isinstance(used, int) else 0

    def _save_session_used(self, used: int) -> None:
        if self.state_path is None:
            return
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(
                json.dumps({"used": used, "updated_at": datetime.now(timezone.utc).isoformat()}),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("session budget write failed at %s: %s", self.state_path, exc)

    def try_consume(self) -> bool:
        if self.used_this_tick >= self.per_tick:
            return False
        if self.session_limit:
            used = self._session_used()
            if used >= self.session_limit:
                return False
            self._save_session_used(used + 1)
        self.used_this_tick += 1
        return True


class TickDriver:
    def __init__(
        self,
        config: BotConfig,
        tracker: Any,
        github: Any,
        engine: TransitionEngine,
        autohealer: Autohealer,
        artifacts: ArtifactWriter,
        *,
        budget: Optional[LlmBudget] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.github = github
        self.engine = engine
        self.autohealer = autohealer
        self.artifacts = artifacts
        self.budget = budget or LlmBudget(
            config.max_llm_actions_per_tick,
            config.max_llm_actions_per_session,
            config.state_dir / SESSION_BUDGET_FILENAME,
        )
        self._now = now
        self.processed: set[str] = set()
        self.summary: dict[str, Any] = {"status": "", "handled": 0, "errors": 0, "deferred": 0, "healed": {}}

    def run(self) -> dict[str, Any]:
        card = read_control_card(self.tracker, self.config)
        now = self._now()
        if not card.enabled:
            logger.info("flow disabled via control card; nothing to do")
            self.summary["status"] = "disabled"
            return self.summary
        if too_soon(card, now):
            logger.info("last tick at %s, interval %s min; skipping", card.last_run, card.interval_min)
            self.summary["status"] = "too_soon"
            return self.summary
        self._stamp_control_card(card, now)

        self._best_effort("ensure tracker fields", self._ensure_fields)
        self._best_effort("sync target repo options", self._sync_repo_options)
        if self.config.intake_autosplit:
            self._best_effort("ensure epic option", self._ensure_epic_option)

        for stage in STAGE_ORDER:
            for item in self._query(stage):
                self._process(item)

        if self.config.autoheal_enabled:
            for item in self._query(Stage.ERROR):
                self._heal(item)

        self.summary["status"] = "ran"
        logger.info("tick done: %s", self.summary)
        return self.summary

    # -- pre-steps -----------------------------------------------------------------

    def _stamp_control_card(self, card: ControlCard, now: datetime) -> None:
        # Stamped before any work so an overlapping trigger sees a fresh last run.
        if not card.page_id:
            return
        fields = self.config.fields
        try:
            self.tracker.set_date(card.page_id, fields.last_run, now.isoformat())
            if card.run_now:
                self.tracker.set_checkbox(card.page_id, fields.run_now, False)
        except ShepherdError as exc:
            logger.warning("control card stamp failed: %s", exc)
        except Exception:
            logger.exception("control card stamp failed")

    def _best_effort(self, label: str, fn: Callable[[], Any]) -> None:
        try:
            fn()
        except ShepherdError as exc:
            logger.warning("%s failed (ignored): %s", label, exc)
        except Exception:
            logger.exception("%s failed (ignored)", label)

    def _ensure_fields(self) -> None:
        f = self.config.fields
        created = self.tracker.ensure_fields(
            {
                f.run_id: "rich_text",
                f.issue_url: "url",
                f.pr_url: "url",
                f.latest_feedback: "rich_text",
                f.last_error: "rich_text",
                f.merge_approved: "checkbox",
            }
        )
        if created:
            logger.info("created tracker fields: %s", created)

    def _sync_repo_options(self) -> None:
        field = self.config.fields.target_repo_select
        if self.tracker.field_type(field) != "select":
            return
        repos = self.github.accessible_repos()
        if repos:
            self.tracker.ensure_select_options(field, repos)

    def _ensure_epic_option(self) -> None:
        self.tracker.ensure_select_options(self.config.fields.stage, [self.config.label(Stage.EPIC)])

    # -- item loop -------------------------------------------------------------------

    def _query(self, stage: Stage) -> list[WorkItem]:
        try:
            return self.tracker.query_by_stage(stage, limit=self.config.max_items)
        except ShepherdError as exc:
            logger.error("query for %s failed: %s", self.config.label(stage), exc)
            return []
        except Exception:
            logger.exception("query for %s failed", self.config.label(stage))
            return []

    def _process(self, item: WorkItem) -> None:
        if item.id in self.processed or item.archived:
            return
        if self.engine.uses_llm(item) and not self.budget.try_consume():
            self.summary["deferred"] += 1
            return
        self.safe_handle(item)

    def safe_handle(self, item: WorkItem) -> Optional[Stage]:
        """Run the engine for one item; any failure parks it in Error instead of ending the tick."""
        if item.archived:
            return None
        self.processed.add(item.id)
        stage_before = item.stage
        try:
            new_stage = self.engine.handle(item)
        except Exception as exc:
            self._record_failure(item, stage_before, exc)
            return None

        self.summary["handled"] += 1
        if item.last_error:
            try:
                self.tracker.set_last_error(item.id, "")
            except ShepherdError as exc:
                logger.warning("clearing last error failed for %s: %s", item.id, exc)
        return new_stage

    def _record_failure(self, item: WorkItem, stage: Stage, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        self.summary["errors"] += 1
        if isinstance(exc, ShepherdError):
            logger.warning("item %s failed in %s: %s", item.id, stage.value, message)
        else:
            logger.exception("item %s failed in %s", item.id, stage.value)
        self.artifacts.event(item.run_id or f"item-{item.id}", "ERROR", f"{stage.value}: {message}")
        self.autohealer.record_failure(item.id, stage)
        writes = (
            ("last error", lambda: self.tracker.set_last_error(item.id, message)),
            ("feedback", lambda: self.tracker.set_feedback(item.id, message)),
            ("stage", lambda: self.tracker.set_stage(item.id, Stage.ERROR)),
        )
        for what, write in writes:
            try:
                write()
            except Exception as write_exc:
                logger.error("recording %s for %s failed: %s", what, item.id, write_exc)

    def _heal(self, item: WorkItem) -> None:
        if item.id in self.processed or item.archived:
            return
        self.processed.add(item.id)
        try:
            outcome = self.autohealer.heal(item)
        except ShepherdError as exc:
            logger.warning("autoheal failed for %s: %s", item.id, exc)
            return
        except Exception:
            logger.exception("autoheal failed for %s", item.id)
            return
        self.summary["healed"][item.id] = outcome
