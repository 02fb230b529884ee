"""Entry point: run one tick.

Exit codes: 0 on success or when the bot is switched off, 2 on configuration
error, 1 on an unhandled fault.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from shepherd.adapters.github_client import GitHubClient
from shepherd.adapters.llm_client import LlmClient
from shepherd.adapters.tracker_client import TrackerClient
from shepherd.models.errors import ConfigError
from shepherd.services.artifact_service import ArtifactWriter
from shepherd.services.autoheal_service import Autohealer
from shepherd.services.bot_config import BotConfig, require_env
from shepherd.services.llm_agents import LlmAgents
from shepherd.services.tick_service import TickDriver
from shepherd.services.transition_engine import TransitionEngine

LOG_FILENAME = "shepherd.log"

log = logging.getLogger("shepherd")


def _setup_logging(state_dir: Path, verbose: bool = False) -> logging.Logger:
    log_dir = state_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not log.handlers:
        h = logging.FileHandler(log_dir / LOG_FILENAME, encoding="utf-8")
        h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        log.addHandler(h)
        if verbose:
            sh = logging.StreamHandler()
            sh.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
            log.addHandler(sh)
    return log


def build_driver(config: BotConfig, llm: Optional[LlmClient] = None) -> TickDriver:
    tracker = TrackerClient(config)
    github = GitHubClient()
    agents = LlmAgents(llm or LlmClient())
    artifacts = ArtifactWriter(config.artifacts_root, redact=config.redact_artifacts)
    engine = TransitionEngine(config, tracker, github, agents, artifacts)
    autohealer = Autohealer(config, tracker, artifacts)
    return TickDriver(config, tracker, github, engine, autohealer, artifacts)


def main(argv: Optional[list[str]] = None, default_env_file: Optional[str] = None) -> int:
    ap = argparse.ArgumentParser(description="Kanban shepherd: advance tracker items by one tick")
    ap.add_argument("--env-file", default=default_env_file, help="dotenv file loaded before reading the environment")
    ap.add_argument("--verbose", "-v", action="store_true", help="Mirror the log file to stderr")
    args = ap.parse_args(argv)

    load_dotenv(args.env_file)
    try:
        require_env()
        config = BotConfig.from_env()
    except ConfigError as exc:
        print(f"shepherd: configuration error: {exc}", file=sys.stderr)
        return 2

    verbose = args.verbose or os.environ.get("SHEPHERD_VERBOSE", "").strip().lower() in {"1", "true", "yes", "on"}
    _setup_logging(config.state_dir, verbose=verbose)
    llm = LlmClient()
    try:
        summary = build_driver(config, llm).run()
    except ConfigError as exc:
        log.error("configuration error: %s", exc)
        print(f"shepherd: configuration error: {exc}", file=sys.stderr)
        return 2
    except Exception:
        log.exception("tick failed")
        return 1
    log.info("llm calls=%d elapsed_ms=%d", llm.calls, llm.elapsed_ms)
    print(f"shepherd: {summary['status']} handled={summary['handled']} errors={summary['errors']} deferred={summary['deferred']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
