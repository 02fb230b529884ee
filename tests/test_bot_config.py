from __future__ import annotations

from pathlib import Path

import pytest

from shepherd.models.errors import ConfigError
from shepherd.models.work_item import DEFAULT_STAGE_LABELS, Stage
from shepherd.services.bot_config import BotConfig, require_env

CREDENTIALS = {
    "NOTION_TOKEN": "secret_x",
    "NOTION_DATA_SOURCE_ID": "ds-1",
    "NOTION_DATABASE_ID": "db-1",
    "OPENAI_API_KEY": "sk-test",
    "GITHUB_TOKEN": "ghp_test",
}


def test_from_env_defaults() -> None:
    config = BotConfig.from_env({})

    assert config.max_items == 10
    assert config.max_llm_actions_per_tick == 10
    assert config.max_llm_actions_per_session == 0
    assert config.dev_max_iters == 2
    assert config.intake_autosplit is False
    assert config.autoheal_enabled is True
    assert config.merge_method == "squash"
    assert config.base_branch == "main"
    assert config.label(Stage.READY_TO_MERGE) == DEFAULT_STAGE_LABELS[Stage.READY_TO_MERGE]
    assert config.fields.stage == "Status"


def test_from_env_overrides() -> None:
    config = BotConfig.from_env(
        {
            "SHEPHERD_MAX_ITEMS": "3",
            "SHEPHERD_MAX_LLM_ACTIONS_PER_SESSION": "40",
            "SHEPHERD_DEV_MAX_ITERS": "0",
            "SHEPHERD_INTAKE_AUTOSPLIT": "yes",
            "SHEPHERD_AUTOHEAL": "off",
            "SHEPHERD_MERGE_METHOD": "Rebase",
            "SHEPHERD_BASE_BRANCH": "develop",
            "SHEPHERD_STATE_DIR": "/tmp/shepherd-state",
            "SHEPHERD_STAGE_LABEL_DONE": "Shipped",
            "SHEPHERD_FIELD_STAGE": "Kanban Stage",
        }
    )

    assert config.max_items == 3
    assert config.max_llm_actions_per_tick == 3
    assert config.max_llm_actions_per_session == 40
    assert config.dev_max_iters == 1
    assert config.intake_autosplit is True
    assert config.autoheal_enabled is False
    assert config.merge_method == "rebase"
    assert config.base_branch == "develop"
    assert config.state_dir == Path("/tmp/shepherd-state")
    assert config.label(Stage.DONE) == "Shipped"
    assert config.stage_for_label("Shipped") == Stage.DONE
    assert config.stage_for_label("nope") is None
    assert config.fields.stage == "Kanban Stage"


@pytest.mark.parametrize(
    "env",
    [
        {"SHEPHERD_MERGE_METHOD": "fast-forward"},
        {"SHEPHERD_MAX_ITEMS": "ten"},
        {"SHEPHERD_STAGE_LABEL_DONE": DEFAULT_STAGE_LABELS[Stage.ERROR]},
    ],
)
def test_from_env_rejects_invalid_values(env) -> None:
    with pytest.raises(ConfigError):
        BotConfig.from_env(env)


def test_require_env_lists_missing_names() -> None:
    env = dict(CREDENTIALS)
    del env["OPENAI_API_KEY"]
    del env["GITHUB_TOKEN"]

    with pytest.raises(ConfigError) as excinfo:
        require_env(env=env)

    assert str(excinfo.value) == "missing_required_env:GITHUB_TOKEN,OPENAI_API_KEY"


def test_require_env_accepts_gh_token_alias() -> None:
    env = dict(CREDENTIALS)
    env.pop("GITHUB_TOKEN")
    env["GH_TOKEN"] = "ghp_alias"

    require_env(env=env)


def test_require_env_does_not_need_database_id() -> None:
    env = dict(CREDENTIALS)
    del env["NOTION_DATABASE_ID"]

    require_env(env=env)
