"""auth_session.py

Login sessions stored in the ``auth`` cookie.

The cookie holds a Flask-JWT-Extended access token whose subject is the
account name. Two extra claims ride along:

  rank  the account's global rank when the session was issued
  pwv   an HMAC fingerprint of the stored password hash

A session is only accepted while ``pwv`` matches the account's current
password hash, so changing the password logs out every other browser.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone

from flask import current_app, g, request
from flask_jwt_extended import (
    create_access_token,
    decode_token,
    set_access_cookies,
    unset_access_cookies,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import PyJWTError

import config
from constants import AUTH_COOKIE, RANK_COOKIE
from database import AccountError, get_user


def password_fingerprint(password_hash: str) -> str:
    key = str(current_app.config["JWT_SECRET_KEY"]).encode("utf-8")
    return hmac.new(key, (password_hash or "").encode("utf-8"), hashlib.sha256).hexdigest()[:32]


def gen_session(user: dict, expiration: datetime) -> str:
    """Issue a session token for `user` that expires at `expiration`."""
    ttl = expiration - datetime.now(timezone.utc)
    if ttl.total_seconds() < 1:
        ttl = timedelta(seconds=1)
    return create_access_token(
        identity=user["name"],
        additional_claims={
            "rank": int(user.get("global_rank") or 0),
            "pwv": password_fingerprint(user.get("password") or ""),
        },
        expires_delta=ttl,
    )


def cookie_domain(settings: dict, host: str | None = None) -> str | None:
    """Dotted root domain when the request host lives under it, else host-only."""
    host = host if host is not None else request.host
    if "." not in config.root_domain(settings):
        return None
    if config.host_in_root_domain(settings, host):
        return config.root_domain_dotted(settings)
    return None


def set_auth_cookies(resp, token: str, rank, expiration: datetime, domain: str | None = None) -> None:
    max_age = max(1, int((expiration - datetime.now(timezone.utc)).total_seconds()))
    set_access_cookies(resp, token, max_age=max_age, domain=domain)
    resp.set_cookie(
        RANK_COOKIE,
        str(rank),
        max_age=max_age,
        domain=domain,
        secure=bool(current_app.config.get("JWT_COOKIE_SECURE")),
        samesite=current_app.config.get("JWT_COOKIE_SAMESITE"),
    )


def clear_auth_cookies(resp, domain: str | None = None) -> None:
    unset_access_cookies(resp, domain=domain)
    resp.delete_cookie(RANK_COOKIE, domain=domain)


def load_request_user() -> None:
    """before_request hook: populate g.user / g.auth_expiration from the cookie."""
    g.user = None
    g.auth_expiration = None

    token = request.cookies.get(current_app.config.get("JWT_ACCESS_COOKIE_NAME", AUTH_COOKIE))
    if not token:
        return

    try:
        claims = decode_token(token)
    except (PyJWTError, JWTExtendedException) as e:
        logging.debug("Ignoring unusable auth cookie: %s", e)
        return

    name = claims.get("sub")
    if not name:
        return
    try:
        user = get_user(name)
    except AccountError:
        return

    if not hmac.compare_digest(str(claims.get("pwv") or ""), password_fingerprint(user.get("password") or "")):
        return

    g.user = user
    g.auth_expiration = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
