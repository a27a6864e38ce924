#!/usr/bin/env python3
"""janitor_runner.py

Run the ChanSync background cleanup loop as a dedicated process.

Under Gunicorn with N workers, a janitor thread per worker means N janitors;
run this as a single service instead.

Usage:
  python janitor_runner.py --config server_config.json

Or via env:
  CHANSYNC_CONFIG=/path/to/server_config.json python janitor_runner.py
"""

from __future__ import annotations

import argparse
import os
import time
from pathlib import Path

from constants import CONFIG_FILE
from database import init_db_pool
from main import load_settings, apply_env_overrides, configure_logging
from janitor import start_janitor


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="ChanSync janitor runner")
    p.add_argument(
        "--config",
        default=os.environ.get("CHANSYNC_CONFIG") or CONFIG_FILE,
        help="path to server config JSON",
    )
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)
    configure_logging(settings)

    init_db_pool(
        minconn=1,
        maxconn=2,
        dsn=str(settings.get("database_url")) if settings.get("database_url") else None,
    )
    start_janitor(settings)
    while True:
        time.sleep(3600)


if __name__ == "__main__":
    main()
