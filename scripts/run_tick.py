#!/usr/bin/env python3
"""Run one shepherd tick (cron / CI entry point).

Usage:
  python scripts/run_tick.py [--env-file PATH] [--verbose]

Reads configuration from the environment (and .env at the repository root).
--verbose (or SHEPHERD_VERBOSE=1) mirrors the log file to stderr.
"""

import os
import sys

_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _root)

from shepherd.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main(default_env_file=os.path.join(_root, ".env")))
