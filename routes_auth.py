#!/usr/bin/env python3
"""
routes_auth.py

Login, logout and registration routes.

Sessions live in the ``auth`` cookie (see auth_session.py). Logging in from an
approved alternate domain bounces through /shimcookie on that domain so the
cookie is also set there; logging out from a foreign host bounces through
/shimlogout on the main site.
"""

import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode, urlparse

from flask import abort, g, make_response, redirect, request
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt import PyJWTError

import config
from auth_session import clear_auth_cookies, cookie_domain, gen_session, set_auth_cookies
from constants import MAX_PASSWORD_LENGTH
from database import INVALID_LOGIN, AccountError, register_user, verify_login
from security import log_audit_event
from utilities import is_valid_email
from webserver import (
    form_str,
    is_allowed_target,
    is_local_target,
    parse_host,
    real_ip,
    redirect_https,
    send_page,
    strip_login_logout,
    verify_csrf,
)


def register_auth_routes(app, settings, limiter=None):
    def _limit(rule, **kwargs):
        """Apply Flask-Limiter rule if available."""
        if limiter is None:
            return lambda f: f
        return limiter.limit(rule, **kwargs)

    def _expiration() -> datetime:
        return datetime.now(timezone.utc) + timedelta(days=config.auth_cookie_days(settings))

    def _finish(target: str, template: str, **context):
        target = strip_login_logout(target)
        if target and is_allowed_target(settings, target):
            return redirect(target)
        return make_response(send_page(template, **context))

    @app.route("/login", methods=["GET"])
    def login_page():
        resp = redirect_https(settings)
        if resp is not None:
            return resp

        if g.user:
            return send_page("login.html", was_already_logged_in=True)
        return send_page("login.html", redirect=request.referrer or "")

    @app.route("/login", methods=["POST"])
    @_limit(settings.get("rate_limit_login") or "10 per minute")
    def login():
        verify_csrf()

        name = form_str("name")
        password = form_str("password")
        if name is None or password is None:
            abort(400)

        password = password[:MAX_PASSWORD_LENGTH]
        form_redirect = form_str("redirect") or ""
        ip = real_ip()

        try:
            user = verify_login(name, password)
        except AccountError as e:
            if str(e) == INVALID_LOGIN:
                log_audit_event(ip, "loginfail", name, f"Login failed (bad password): {name}@{ip}")
            return send_page("login.html", login_error=str(e), redirect=form_redirect)

        expiration = _expiration()
        token = gen_session(user, expiration)
        rank = int(user.get("global_rank") or 0)
        target = form_redirect or request.referrer or ""

        host = parse_host(target)
        if host and not is_local_target(settings, target):
            bare_host = host.split(":", 1)[0]
            if bare_host in config.alt_domains(settings):
                scheme = urlparse(target).scheme or "https"
                dest = f"{scheme}://{host}/shimcookie?" + urlencode(
                    {"auth": token, "rank": rank, "redirect": target}
                )
                resp = redirect(dest)
                set_auth_cookies(resp, token, rank, expiration, domain=cookie_domain(settings))
                return resp
            logging.warning("Attempted login from non-approved domain %s", bare_host)
            target = ""

        resp = _finish(target, "login.html", logged_in=True, login_name=user["name"])
        set_auth_cookies(resp, token, rank, expiration, domain=cookie_domain(settings))
        return resp

    @app.route("/shimcookie")
    def shim_cookie():
        auth = request.args.get("auth", type=str)
        rank = request.args.get("rank", type=str)
        target = request.args.get("redirect", type=str)
        if auth is None or rank is None or target is None:
            abort(400)

        try:
            claims = decode_token(auth)
        except (PyJWTError, JWTExtendedException):
            abort(400)

        expiration = datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        resp = _finish(target, "login.html", logged_in=True, login_name=claims.get("sub") or "")
        set_auth_cookies(resp, auth, rank, expiration)
        return resp

    @app.route("/logout")
    def logout():
        target = request.referrer or request.args.get("redirect", type=str) or ""
        domain = cookie_domain(settings)

        if not config.host_in_root_domain(settings, request.host):
            base = config.full_address(settings)
            resp = redirect(f"{base}/shimlogout?" + urlencode({"redirect": target}))
            clear_auth_cookies(resp)
            return resp

        resp = _finish(target, "logout.html", logged_in=False, login_name="")
        clear_auth_cookies(resp)
        if domain:
            clear_auth_cookies(resp, domain=domain)
        return resp

    @app.route("/shimlogout")
    def shim_logout():
        target = request.args.get("redirect", type=str)
        if target is None:
            abort(400)

        resp = _finish(target, "logout.html", logged_in=False, login_name="")
        clear_auth_cookies(resp)
        domain = cookie_domain(settings)
        if domain:
            clear_auth_cookies(resp, domain=domain)
        return resp

    @app.route("/register", methods=["GET"])
    def register_page():
        resp = redirect_https(settings)
        if resp is not None:
            return resp

        if g.user:
            return send_page("register.html")
        return send_page("register.html", registered=False, register_error=None)

    @app.route("/register", methods=["POST"])
    @_limit(settings.get("rate_limit_register") or "5 per minute")
    def register():
        verify_csrf()

        name = form_str("name")
        password = form_str("password")
        email = form_str("email") or ""
        if name is None or password is None:
            abort(400)

        def _fail(message):
            return send_page("register.html", registered=False, register_error=message)

        if not name:
            return _fail("Username must not be empty")
        if config.is_reserved_username(settings, name):
            return _fail("That username is reserved")
        if not password:
            return _fail("Password must not be empty")

        password = password[:MAX_PASSWORD_LENGTH]

        if email and not is_valid_email(email):
            return _fail("Invalid email address")

        ip = real_ip()
        try:
            register_user(name, password, email, ip, max_accounts_per_ip=config.max_accounts_per_ip(settings))
        except AccountError as e:
            return _fail(str(e))

        log_audit_event(
            ip,
            "register",
            name,
            f"registered account: {name}" + (f" <{email}>" if email else ""),
        )
        return send_page(
            "register.html",
            registered=True,
            register_name=name,
            redirect=form_str("redirect") or "",
        )
