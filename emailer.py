#!/usr/bin/env python3
"""emailer.py

Minimal SMTP sender for transactional emails (password reset).

Never print reset links or email bodies to logs.

Supported settings keys (any of these):
  smtp_enabled: bool
  smtp_host / smtp_server: str
  smtp_port: int
  smtp_username / smtp_user: str
  smtp_password / smtp_pass: str
  smtp_use_starttls / smtp_tls: bool (STARTTLS on port 587)
  smtp_use_ssl / smtp_ssl: bool (implicit TLS, typically port 465)
  mail_from_name + mail_from_address, or smtp_from: str
"""

from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import formataddr


def _get(settings: dict, *keys, default=None):
    for k in keys:
        if k in settings and settings[k] not in (None, ""):
            return settings[k]
    return default


def _env(*names: str) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v.strip()
    return None


def _flag(settings: dict, env_names: tuple[str, ...], keys: tuple[str, ...], default: bool) -> bool:
    env_val = _env(*env_names)
    if env_val is not None:
        return env_val.lower() in {"1", "true", "yes", "on"}
    return bool(_get(settings, *keys, default=default))


def is_mail_enabled(settings: dict) -> bool:
    """True when SMTP is switched on and has a host to talk to."""
    enabled = _flag(settings, ("CHANSYNC_SMTP_ENABLED", "SMTP_ENABLED"), ("smtp_enabled",), False)
    host = _env("CHANSYNC_SMTP_HOST", "SMTP_HOST") or _get(settings, "smtp_host", "smtp_server")
    return bool(enabled and host)


def from_header(settings: dict) -> str:
    explicit = _env("CHANSYNC_SMTP_FROM", "SMTP_FROM") or _get(settings, "smtp_from")
    if explicit:
        return str(explicit)
    name = _get(settings, "mail_from_name", "server_name", default="ChanSync")
    address = _get(settings, "mail_from_address", default="no-reply@localhost")
    return formataddr((str(name), str(address)))


def send_email(settings: dict, *, to_email: str, subject: str, body_text: str) -> tuple[bool, str]:
    """Send a plaintext email.

    Returns (ok, info). If SMTP isn't configured, returns (False, "not_configured").
    """
    if not to_email:
        return False, "missing_to"

    if not is_mail_enabled(settings):
        logging.error("SMTP not configured/enabled; cannot send email (to=%s subject=%s)", to_email, subject)
        return False, "not_configured"

    host = _env("CHANSYNC_SMTP_HOST", "SMTP_HOST") or _get(settings, "smtp_host", "smtp_server")
    port = int(_env("CHANSYNC_SMTP_PORT", "SMTP_PORT") or _get(settings, "smtp_port", default=587) or 587)
    username = _env("CHANSYNC_SMTP_USERNAME", "SMTP_USERNAME") or _get(settings, "smtp_username", "smtp_user")
    password = _env("CHANSYNC_SMTP_PASSWORD", "SMTP_PASSWORD") or _get(settings, "smtp_password", "smtp_pass")
    starttls = _flag(settings, ("CHANSYNC_SMTP_STARTTLS", "SMTP_STARTTLS"), ("smtp_use_starttls", "smtp_tls"), True)
    use_ssl = _flag(settings, ("CHANSYNC_SMTP_SSL", "SMTP_SSL"), ("smtp_use_ssl", "smtp_ssl"), False)
    # Port 465 is implicit TLS.
    if port == 465 and not starttls:
        use_ssl = True

    msg = EmailMessage()
    msg["From"] = from_header(settings)
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)

    try:
        smtp_cls = smtplib.SMTP_SSL if use_ssl else smtplib.SMTP
        with smtp_cls(host, port, timeout=15) as smtp:
            smtp.ehlo()
            if starttls and not use_ssl:
                smtp.starttls()
                smtp.ehlo()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)
        return True, "sent"
    except (smtplib.SMTPException, OSError) as e:
        # Do not log body_text (contains reset link).
        logging.warning("SMTP send failed (%s:%s) to=%s subject=%s: %s", host, port, to_email, subject, e)
        return False, f"smtp_error:{type(e).__name__}"
