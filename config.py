#!/usr/bin/env python3
"""config.py

Typed accessors over the runtime settings dict.

The settings dict itself is loaded by main.load_settings() (JSON file + env
overrides). Routes receive it at registration time and read it through these
helpers so defaults live in one place.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import Any, Iterable

# Same defaults as a fresh install: names containing "admin"/"system" are held back.
DEFAULT_RESERVED_USERNAMES = [
    r"^(.*?[-_])?admin(istrator)?([-_].*)?$",
    r"^(.*?[-_])?system([-_].*)?$",
]
DEFAULT_RESERVED_CHANNEL_NAMES = [
    r"^(.*?[-_])?admin(istrator)?([-_].*)?$",
]


def _int(settings: dict, key: str, default: int) -> int:
    try:
        return int(settings.get(key, default))
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=32)
def _compile_reserved(patterns: tuple[str, ...]) -> re.Pattern | None:
    if not patterns:
        return None
    try:
        return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)
    except re.error as exc:
        logging.error("Invalid reserved-name pattern %r: %s", patterns, exc)
        return None


def _patterns(value: Any, default: Iterable[str]) -> tuple[str, ...]:
    if value is None:
        return tuple(default)
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    return tuple(str(v) for v in value if str(v).strip())


def is_reserved_username(settings: dict, name: str) -> bool:
    rx = _compile_reserved(_patterns(settings.get("reserved_usernames"), DEFAULT_RESERVED_USERNAMES))
    return bool(rx and rx.search(name))


def is_reserved_channel_name(settings: dict, name: str) -> bool:
    rx = _compile_reserved(_patterns(settings.get("reserved_channel_names"), DEFAULT_RESERVED_CHANNEL_NAMES))
    return bool(rx and rx.search(name))


def root_domain(settings: dict) -> str:
    return str(settings.get("root_domain") or "localhost").strip().lower()


def root_domain_dotted(settings: dict) -> str:
    dotted = str(settings.get("root_domain_dotted") or "").strip().lower()
    if dotted:
        return dotted
    return "." + root_domain(settings).lstrip(".")


def alt_domains(settings: dict) -> list[str]:
    val = settings.get("alt_domains") or []
    if isinstance(val, str):
        val = val.split(",")
    return [str(x).strip().lower() for x in val if str(x).strip()]


def host_in_root_domain(settings: dict, host: str) -> bool:
    """True when `host` (port stripped) is the root domain or one of its subdomains."""
    host = (host or "").split(":", 1)[0].strip().lower()
    root = root_domain(settings)
    return host == root or host.endswith("." + root)


def full_address(settings: dict) -> str:
    """Absolute base address (no trailing slash) for links and cross-domain bounces.

    Built from configuration only; the request Host header is never used, so a
    forged Host cannot end up in a password reset mail.
    """
    if settings.get("https"):
        addr = settings.get("https_full_address") or settings.get("public_base_url")
        scheme = "https"
    else:
        addr = settings.get("public_base_url")
        scheme = "http"
    if not addr:
        addr = f"{scheme}://{root_domain(settings)}"
    return str(addr).rstrip("/")


def max_channels_per_user(settings: dict) -> int:
    return _int(settings, "max_channels_per_user", 5)


def max_accounts_per_ip(settings: dict) -> int:
    return _int(settings, "max_accounts_per_ip", 5)


def auth_cookie_days(settings: dict) -> int:
    return max(1, _int(settings, "auth_cookie_days", 7))


def password_reset_hours(settings: dict) -> int:
    return max(1, _int(settings, "password_reset_hours", 24))


def site_title(settings: dict) -> str:
    return str(settings.get("server_name") or "ChanSync")
