#!/usr/bin/env python3
"""main.py

ChanSync server entrypoint.

``server_config.json`` is a plaintext JSON settings file. To keep secrets out
of it, prefer environment variables (``DATABASE_URL``, ``SECRET_KEY``,
``JWT_SECRET_KEY``, ``SMTP_PASSWORD``) and set ``CHANSYNC_PERSIST_SECRETS=0``.
"""

from __future__ import annotations

import argparse
from datetime import datetime
import json
import logging
import os
import sys
from pathlib import Path

from constants import CONFIG_FILE, sanitize_postgres_dsn
from interactive_setup import get_default_settings, interactive_setup
from server_init import run_web_server
from secrets_policy import scrub_secrets_for_persist


def configure_logging(settings: dict) -> None:
    """Configure the server log plus the separate account event log."""
    log_level_str = str(settings.get("log_level", "INFO")).upper()
    log_format = settings.get(
        "log_format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    log_file_path = settings.get("log_file_path", "logs/server.log")
    event_log_path = settings.get("event_log_path", "logs/events.log")

    for path in (log_file_path, event_log_path):
        log_dir = os.path.dirname(path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(level=log_level, format=log_format, filename=log_file_path, filemode="a")
    logging.getLogger().addHandler(logging.StreamHandler(sys.stdout))

    # [register] / [loginfail] / [account] / [channel] lines also go to their own file.
    events = logging.getLogger("chansync.events")
    events_handler = logging.FileHandler(event_log_path, encoding="utf-8")
    events_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    events.addHandler(events_handler)
    events.setLevel(logging.INFO)

    logging.info("Logging configured (level=%s)", log_level_str)


def load_settings(path: Path) -> dict:
    """Load settings from JSON. Returns defaults if missing."""
    if not path.exists():
        return get_default_settings()

    try:
        with path.open("r", encoding="utf-8") as fp:
            loaded = json.load(fp)
    except (OSError, ValueError) as exc:
        print(f"Could not parse {path} as JSON: {exc}")
        # Back up the broken file so generated secrets can be persisted into a fresh one.
        ts = datetime.now().strftime("%Y%m%d-%H%M%S")
        bad_path = path.with_suffix(path.suffix + f".bad-{ts}")
        try:
            path.rename(bad_path)
            print(f"Backed up invalid settings file to: {bad_path}")
        except OSError as e2:
            print(f"Could not back up invalid settings file: {e2}")
        print("Falling back to defaults (run with --setup to rewrite config).")
        return get_default_settings()

    settings = get_default_settings()
    settings.update(loaded)
    return settings


def save_settings(path: Path, settings: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    to_save = scrub_secrets_for_persist(settings)
    with path.open("w", encoding="utf-8") as fp:
        json.dump(to_save, fp, indent=2)


def apply_env_overrides(settings: dict) -> None:
    """Apply env overrides for secrets and runtime deployment."""

    def _bool_env(*names: str) -> bool | None:
        for n in names:
            v = os.getenv(n)
            if v is None:
                continue
            v = v.strip().lower()
            if v in ("1", "true", "yes", "y", "on"):
                return True
            if v in ("0", "false", "no", "n", "off"):
                return False
        return None

    def _str_env(*names: str) -> str | None:
        for n in names:
            v = os.getenv(n)
            if v is not None and v.strip() != "":
                return v.strip()
        return None

    def _int_env(*names: str) -> int | None:
        v = _str_env(*names)
        if v is None:
            return None
        try:
            return int(v)
        except ValueError:
            return None

    db = os.getenv("DB_CONNECTION_STRING") or os.getenv("DATABASE_URL")
    if db:
        settings["database_url"] = str(sanitize_postgres_dsn(db))

    secret = os.getenv("SECRET_KEY")
    if secret:
        settings["secret_key"] = secret

    jwt_secret = _str_env("JWT_SECRET_KEY", "CHANSYNC_JWT_SECRET")
    if jwt_secret:
        settings["jwt_secret"] = jwt_secret

    root_domain = _str_env("CHANSYNC_ROOT_DOMAIN")
    if root_domain:
        settings["root_domain"] = root_domain

    public_url = _str_env("CHANSYNC_PUBLIC_BASE_URL")
    if public_url:
        settings["public_base_url"] = public_url

    https = _bool_env("CHANSYNC_HTTPS")
    if https is not None:
        settings["https"] = https

    rate_limit = _bool_env("CHANSYNC_RATE_LIMIT_ENABLED")
    if rate_limit is not None:
        settings["rate_limit_enabled"] = rate_limit

    smtp_enabled = _bool_env("CHANSYNC_SMTP_ENABLED", "SMTP_ENABLED")
    if smtp_enabled is not None:
        settings["smtp_enabled"] = smtp_enabled

    smtp_host = _str_env("CHANSYNC_SMTP_HOST", "SMTP_HOST")
    if smtp_host:
        settings["smtp_host"] = smtp_host

    smtp_port = _int_env("CHANSYNC_SMTP_PORT", "SMTP_PORT")
    if smtp_port:
        settings["smtp_port"] = smtp_port

    smtp_user = _str_env("CHANSYNC_SMTP_USERNAME", "SMTP_USERNAME")
    if smtp_user:
        settings["smtp_username"] = smtp_user

    smtp_pass = _str_env("CHANSYNC_SMTP_PASSWORD", "SMTP_PASSWORD")
    if smtp_pass:
        settings["smtp_password"] = smtp_pass

    smtp_from = _str_env("CHANSYNC_SMTP_FROM", "SMTP_FROM")
    if smtp_from:
        settings["smtp_from"] = smtp_from


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="ChanSync server")
    p.add_argument("--setup", action="store_true", help="run the interactive setup wizard")
    p.add_argument("--config", default=CONFIG_FILE, help="path to server config JSON")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    settings_path = Path(args.config)

    settings = load_settings(settings_path)
    apply_env_overrides(settings)

    if args.setup or not settings_path.exists():
        print("\n=== ChanSync Setup Wizard ===\n")
        settings = interactive_setup(settings)
        save_settings(settings_path, settings)
        print(f"Saved settings to {settings_path}\n")

    configure_logging(settings)
    run_web_server(settings, limiter=None, settings_file=settings_path)


if __name__ == "__main__":
    main()
