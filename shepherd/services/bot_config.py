"""Bot configuration: feature toggles, budgets, stage labels and tracker field names.

Read once at process start and passed explicitly to the driver and engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from shepherd.models.errors import ConfigError
from shepherd.models.work_item import DEFAULT_STAGE_LABELS, Stage

MERGE_METHODS = ("squash", "merge", "rebase")

REQUIRED_CREDENTIALS = (
    "NOTION_TOKEN",
    "NOTION_DATA_SOURCE_ID",
    "OPENAI_API_KEY",
)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return _truthy(raw)


def _int_env(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid int env {name}: {raw}") from exc
    return max(minimum, value)


def require_env(names: tuple[str, ...] = REQUIRED_CREDENTIALS, env: Mapping[str, str] | None = None) -> None:
    """Fail fast when process-wide credentials are missing."""
    source = os.environ if env is None else env
    missing = [name for name in names if not (source.get(name) or "").strip()]
    if not (source.get("GITHUB_TOKEN") or source.get("GH_TOKEN") or "").strip():
        missing.append("GITHUB_TOKEN")
    if missing:
        raise ConfigError(f"missing_required_env:{','.join(sorted(missing))}")


@dataclass(frozen=True)
class TrackerFields:
    """Names of the tracker properties the bot reads and writes."""

    title: str = "Name"
    stage: str = "Status"
    rough_description: str = "Rough Draft"
    target_repo: str = "Target Repo"
    target_repo_select: str = "Target Repo (select)"
    run_id: str = "Run ID"
    issue_url: str = "GitHub Issue"
    pr_url: str = "GitHub PR"
    latest_feedback: str = "Latest Feedback"
    last_error: str = "Last Error"
    parent: str = "Parent"
    children: str = "Children"
    merge_approved: str = "Merge Approved"
    # control card
    flow_enabled: str = "AI Flow Enabled"
    tick_interval: str = "AI Tick Interval (min)"
    run_now: str = "AI Tick Run Now"
    last_run: str = "AI Tick Last Run"

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> TrackerFields:
        overrides: dict[str, str] = {}
        for name in cls.__dataclass_fields__:
            raw = (env.get(f"SHEPHERD_FIELD_{name.upper()}") or "").strip()
            if raw:
                overrides[name] = raw
        return cls(**overrides)


@dataclass(frozen=True)
class BotConfig:
    max_items: int = 10
    max_llm_actions_per_tick: int = 10
    max_llm_actions_per_session: int = 0
    max_packages: int = 10
    dev_max_iters: int = 2
    intake_autosplit: bool = False
    autoheal_enabled: bool = True
    redact_artifacts: bool = True
    merge_method: str = "squash"
    base_branch: str = "main"
    artifacts_root: Path = Path("shepherd-runs")
    state_dir: Path = Path(".shepherd-state")
    control_card_title: str = "Shepherd Control - AI Flow Master Switch"
    bot_name: str = "shepherd-bot"
    bot_email: str = "shepherd-bot@users.noreply.github.com"
    stage_labels: Mapping[Stage, str] = field(default_factory=lambda: dict(DEFAULT_STAGE_LABELS))
    fields: TrackerFields = field(default_factory=TrackerFields)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BotConfig:
        source = os.environ if env is None else env
        max_items = _int_env(source, "SHEPHERD_MAX_ITEMS", 10, minimum=1)

        merge_method = (source.get("SHEPHERD_MERGE_METHOD") or "squash").strip().lower()
        if merge_method not in MERGE_METHODS:
            raise ConfigError(f"SHEPHERD_MERGE_METHOD must be one of {list(MERGE_METHODS)}; got {merge_method!r}")

        labels = dict(DEFAULT_STAGE_LABELS)
        for stage in Stage:
            raw = (source.get(f"SHEPHERD_STAGE_LABEL_{stage.name}") or "").strip()
            if raw:
                labels[stage] = raw
        if len(set(labels.values())) != len(labels):
            raise ConfigError("Stage labels must be unique")

        kwargs: dict = {
            "max_items": max_items,
            "max_llm_actions_per_tick": _int_env(source, "SHEPHERD_MAX_LLM_ACTIONS_PER_TICK", max_items),
            "max_llm_actions_per_session": _int_env(source, "SHEPHERD_MAX_LLM_ACTIONS_PER_SESSION", 0),
            "max_packages": _int_env(source, "SHEPHERD_MAX_PACKAGES", 10, minimum=1),
            "dev_max_iters": _int_env(source, "SHEPHERD_DEV_MAX_ITERS", 2, minimum=1),
            "intake_autosplit": _bool_env(source, "SHEPHERD_INTAKE_AUTOSPLIT", False),
            "autoheal_enabled": _bool_env(source, "SHEPHERD_AUTOHEAL", True),
            "redact_artifacts": _bool_env(source, "SHEPHERD_REDACT_ARTIFACTS", True),
            "merge_method": merge_method,
            "stage_labels": labels,
            "fields": TrackerFields.from_env(source),
        }
        optional_strings = {
            "base_branch": "SHEPHERD_BASE_BRANCH",
            "control_card_title": "SHEPHERD_CONTROL_CARD_TITLE",
            "bot_name": "SHEPHERD_BOT_NAME",
            "bot_email": "SHEPHERD_BOT_EMAIL",
        }
        for attr, env_name in optional_strings.items():
            raw = (source.get(env_name) or "").strip()
            if raw:
                kwargs[attr] = raw
        for attr, env_name in (("artifacts_root", "SHEPHERD_ARTIFACTS_DIR"), ("state_dir", "SHEPHERD_STATE_DIR")):
            raw = (source.get(env_name) or "").strip()
            if raw:
                kwargs[attr] = Path(raw)
        return cls(**kwargs)

    def label(self, stage: Stage) -> str:
        return self.stage_labels.get(stage, DEFAULT_STAGE_LABELS[stage])

    def stage_for_label(self, label: str) -> Stage | None:
        wanted = (label or "").strip()
        for stage, value in self.stage_labels.items():
            if value == wanted:
                return stage
        return None
