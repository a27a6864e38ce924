#!/usr/bin/env python3
"""interactive_setup.py

ChanSync setup wizard.

  • Quick setup (default): database, domains, HTTPS, mail.
  • Advanced setup (optional): quotas, cookie lifetime, logging, pool sizing.

The saved JSON is compacted to known ChanSync keys so server_config.json stays
readable.
"""

from __future__ import annotations

import getpass
import os
import secrets
from typing import Any, Dict

import psycopg2

from config import DEFAULT_RESERVED_CHANNEL_NAMES, DEFAULT_RESERVED_USERNAMES
from constants import DEFAULT_DB_CONNECTION_STRING, sanitize_postgres_dsn


def get_default_settings() -> Dict[str, Any]:
    """Return the compact default settings.

    server_init.py generates and persists secret_key + jwt_secret if missing.
    """

    dsn = sanitize_postgres_dsn(
        os.getenv("DATABASE_URL")
        or os.getenv("DB_CONNECTION_STRING")
        or DEFAULT_DB_CONNECTION_STRING
    )

    return {
        # ── Core server ──────────────────────────────────────────────────
        "server_name": "ChanSync",
        "host": "0.0.0.0",
        "port": 5000,
        "debug": False,

        # ── Domains / HTTPS ──────────────────────────────────────────────
        "root_domain": "localhost",
        "alt_domains": [],
        "public_base_url": "",
        "https": False,
        "https_redirect": True,
        "https_full_address": "",
        "ssl_cert_file": "",
        "ssl_key_file": "",

        # Secrets (server_init.py will generate/persist if missing)
        "secret_key": "",
        "jwt_secret": "",

        # ── Database ─────────────────────────────────────────────────────
        "database_url": dsn,
        "db_pool_min": 1,
        "db_pool_max": 10,

        # ── Accounts / channels ──────────────────────────────────────────
        "auth_cookie_days": 7,
        "cookie_secure": False,
        "cookie_samesite": "Lax",
        "csrf_enabled": True,
        "max_accounts_per_ip": 5,
        "max_channels_per_user": 5,
        "password_reset_hours": 24,
        "reserved_usernames": list(DEFAULT_RESERVED_USERNAMES),
        "reserved_channel_names": list(DEFAULT_RESERVED_CHANNEL_NAMES),

        # ── Email (SMTP relay; password reset) ───────────────────────────
        "smtp_enabled": False,
        "smtp_host": "",
        "smtp_port": 587,
        "smtp_username": "",
        "smtp_password": "",
        "smtp_use_starttls": True,
        "smtp_use_ssl": False,
        "mail_from_name": "ChanSync",
        "mail_from_address": "no-reply@localhost",

        # ── Rate limiting ────────────────────────────────────────────────
        "rate_limit_enabled": True,
        "rate_limit_storage_uri": "memory://",
        "rate_limit_login": "10 per minute",
        "rate_limit_register": "5 per minute",
        "rate_limit_password_reset": "5 per minute",

        # ── Socket.IO ────────────────────────────────────────────────────
        "socketio_message_queue": "",

        # ── Logging / housekeeping ───────────────────────────────────────
        "log_level": "INFO",
        "log_file_path": "logs/server.log",
        "event_log_path": "logs/events.log",
        "janitor_interval_seconds": 300,
    }


def _compact_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unknown keys so server_config.json stays small."""
    template = get_default_settings()
    return {k: settings.get(k, template[k]) for k in template}


# ──────────────────────────────────────────────────────────────────────────────
# Prompt helpers
# ──────────────────────────────────────────────────────────────────────────────


def _yn(prompt: str, default: bool = True) -> bool:
    suffix = "[Y/n]" if default else "[y/N]"
    while True:
        raw = (input(f"{prompt} {suffix}: ") or "").strip().lower()
        if not raw:
            return default
        if raw in ("y", "yes"):
            return True
        if raw in ("n", "no"):
            return False
        print("Please answer yes or no.")


def _prompt_str(prompt: str, default: str) -> str:
    raw = input(f"{prompt} [{default}]: ")
    return raw.strip() if raw.strip() else default


def _prompt_int(prompt: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    while True:
        raw = input(f"{prompt} [{default}]: ").strip()
        if not raw:
            val = default
        else:
            try:
                val = int(raw)
            except ValueError:
                print("Please enter a valid integer.")
                continue

        if min_val is not None and val < min_val:
            print(f"Must be >= {min_val}.")
            continue
        if max_val is not None and val > max_val:
            print(f"Must be <= {max_val}.")
            continue
        return val


def _prompt_secret(prompt: str) -> str:
    while True:
        val = getpass.getpass(f"{prompt}: ").strip()
        if val:
            return val
        print("Value cannot be empty.")


def _prompt_csv(prompt: str, default: list) -> list:
    raw = input(f"{prompt} [{', '.join(default) or 'none'}]: ").strip()
    if not raw:
        return list(default)
    return [s.strip() for s in raw.split(",") if s.strip()]


def interactive_setup(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Run the setup wizard and return an updated (compacted) settings dict."""

    base = get_default_settings()
    merged = {**base, **(settings or {})}

    advanced = _yn("Advanced mode? (more prompts)", default=False)

    # ── Core server ───────────────────────────────────────────────────────────
    merged["server_name"] = _prompt_str("Site title", str(merged.get("server_name") or base["server_name"]))
    merged["host"] = _prompt_str("Bind host", str(merged.get("host") or base["host"]))
    merged["port"] = _prompt_int("Bind port", int(merged.get("port") or base["port"]), 1, 65535)

    # ── Database ──────────────────────────────────────────────────────────────
    while True:
        raw_dsn = _prompt_str("PostgreSQL DSN", str(merged.get("database_url") or base["database_url"]))
        merged["database_url"] = str(sanitize_postgres_dsn(raw_dsn))
        if merged["database_url"] != raw_dsn:
            print("DSN sanitised (removed placeholder angle brackets / quotes).")
        try:
            test = psycopg2.connect(str(merged["database_url"]))
            test.close()
            print("PostgreSQL connection OK")
            break
        except psycopg2.Error as e:
            print(f"PostgreSQL connection failed: {e}")
            if not _yn("Try again?", default=True):
                raise SystemExit(1)

    # ── Domains / HTTPS ───────────────────────────────────────────────────────
    print("\n-- Domains --")
    merged["root_domain"] = _prompt_str("Root domain (cookies are shared below it)", str(merged.get("root_domain") or "localhost"))
    merged["alt_domains"] = _prompt_csv("Alternate domains allowed to share logins (comma-separated)", merged.get("alt_domains") or [])
    merged["public_base_url"] = _prompt_str("Public base URL (used in reset emails)", str(merged.get("public_base_url") or ""))

    merged["https"] = _yn(
        "Are you serving the site over HTTPS (or behind an HTTPS reverse proxy)?",
        default=bool(merged.get("https", False)),
    )
    merged["cookie_secure"] = merged["https"]
    if merged["https"]:
        merged["https_full_address"] = _prompt_str(
            "HTTPS address to redirect account pages to",
            str(merged.get("https_full_address") or f"https://{merged['root_domain']}"),
        )

    # ── Email (SMTP relay) ───────────────────────────────────────────────────
    print("\n-- Email (SMTP relay; password reset) --")
    merged["smtp_enabled"] = _yn("Enable SMTP for password reset emails?", default=bool(merged.get("smtp_enabled", False)))
    if merged["smtp_enabled"]:
        merged["smtp_host"] = _prompt_str("SMTP host", str(merged.get("smtp_host") or ""))
        merged["smtp_port"] = _prompt_int("SMTP port", int(merged.get("smtp_port") or 587), 1, 65535)
        merged["smtp_use_starttls"] = _yn("Use STARTTLS?", default=bool(merged.get("smtp_use_starttls", True)))
        merged["smtp_use_ssl"] = _yn(
            "Use implicit TLS (SMTP SSL)?",
            default=bool(merged.get("smtp_use_ssl", False)) or int(merged["smtp_port"]) == 465,
        )
        merged["smtp_username"] = _prompt_str("SMTP username/login", str(merged.get("smtp_username") or ""))
        if _yn("Store SMTP password in server_config.json? (not recommended)", default=False):
            merged["smtp_password"] = _prompt_secret("SMTP password / key")
        else:
            merged["smtp_password"] = ""
            print("SMTP password will be read from env var CHANSYNC_SMTP_PASSWORD (or SMTP_PASSWORD).")
        merged["mail_from_name"] = _prompt_str("From name", str(merged.get("mail_from_name") or merged["server_name"]))
        merged["mail_from_address"] = _prompt_str("From address", str(merged.get("mail_from_address") or base["mail_from_address"]))

    # ── Quotas / cookies / pool / logging ─────────────────────────────────────
    if advanced:
        merged["max_accounts_per_ip"] = _prompt_int(
            "Max accounts per IP (0 = unlimited)", int(merged.get("max_accounts_per_ip") or 0), 0, 1000
        )
        merged["max_channels_per_user"] = _prompt_int(
            "Max channels per user", int(merged.get("max_channels_per_user") or base["max_channels_per_user"]), 1, 1000
        )
        merged["auth_cookie_days"] = _prompt_int(
            "Login cookie lifetime (days)", int(merged.get("auth_cookie_days") or base["auth_cookie_days"]), 1, 365
        )
        merged["password_reset_hours"] = _prompt_int(
            "Password reset link lifetime (hours)",
            int(merged.get("password_reset_hours") or base["password_reset_hours"]),
            1,
            24 * 7,
        )
        merged["db_pool_min"] = _prompt_int("DB pool min", int(merged.get("db_pool_min") or base["db_pool_min"]), 1, 100)
        merged["db_pool_max"] = _prompt_int("DB pool max", int(merged.get("db_pool_max") or base["db_pool_max"]), 1, 500)
        merged["log_level"] = _prompt_str("Log level (DEBUG/INFO/WARNING/ERROR)", str(merged.get("log_level") or base["log_level"]))
        merged["log_file_path"] = _prompt_str("Log file path", str(merged.get("log_file_path") or base["log_file_path"]))
        merged["event_log_path"] = _prompt_str("Event log path", str(merged.get("event_log_path") or base["event_log_path"]))

    # ── JWT secret (stable) ───────────────────────────────────────────────────
    if not merged.get("jwt_secret") and _yn("Generate & save a stable jwt_secret now?", default=True):
        merged["jwt_secret"] = secrets.token_hex(32)
        print("jwt_secret generated")

    print("\nTo make an account a site admin, register it and run:")
    print("  python adminctl.py rank <name> 255")
    print("\nSetup complete.\n")
    return _compact_settings(merged)
