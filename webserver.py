"""webserver.py

Request helpers shared by the route modules: client IP, HTTPS redirect,
CSRF check, redirect-target sanitising and page rendering.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from flask import abort, current_app, g, redirect, render_template, request
from flask_wtf.csrf import validate_csrf
from wtforms.validators import ValidationError

import config
from constants import APP_VERSION

_LOGIN_LOGOUT_RE = re.compile(r"login|logout")


def real_ip() -> str:
    xff = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return xff or (request.remote_addr or "").strip()


def redirect_https(settings: dict):
    """Return a redirect response to the HTTPS site when one is configured, else None."""
    if not settings.get("https") or not settings.get("https_redirect", True):
        return None
    if request.is_secure or request.headers.get("X-Forwarded-Proto", "").lower() == "https":
        return None
    base = config.full_address(settings)
    if not base.startswith("https://"):
        return None
    return redirect(base + request.full_path.rstrip("?"), code=301)


def verify_csrf() -> None:
    """Abort with 400 unless the form carries a valid CSRF token."""
    if not current_app.config.get("WTF_CSRF_ENABLED", True):
        return
    try:
        validate_csrf(request.form.get("csrf_token"))
    except ValidationError:
        abort(400, description="Invalid CSRF token")


def form_str(key: str):
    """Form value as str, or None when the field is absent."""
    return request.form.get(key, type=str)


def strip_login_logout(target: str) -> str:
    """Redirecting back to /login or /logout would loop; drop such targets."""
    return "" if _LOGIN_LOGOUT_RE.search(target or "") else (target or "")


def parse_host(target: str) -> str:
    try:
        return (urlparse(target).netloc or "").lower()
    except ValueError:
        return ""


def is_local_target(settings: dict, target: str) -> bool:
    """Relative paths, the current host, and hosts under the root domain are local."""
    host = parse_host(target)
    if not host:
        return target.startswith("/") and not target.startswith("//")
    return host == request.host.lower() or config.host_in_root_domain(settings, host)


def is_allowed_target(settings: dict, target: str) -> bool:
    """Local targets plus the configured alternate domains."""
    if not target:
        return False
    if is_local_target(settings, target):
        return True
    return parse_host(target).split(":", 1)[0] in config.alt_domains(settings)


def send_page(template: str, **context):
    """Render a page with the common layout context filled in."""
    settings = current_app.config.get("CHANSYNC_SETTINGS") or {}
    user = g.get("user")
    context.setdefault("logged_in", bool(user))
    context.setdefault("login_name", user["name"] if user else "")
    context.setdefault("site_title", config.site_title(settings))
    context.setdefault("app_version", APP_VERSION)
    return render_template(template, **context)
