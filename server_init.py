#!/usr/bin/env python3
"""
server_init.py
Builds and runs the ChanSync Flask + Socket.IO application.

init_database() runs inside an application context; the request teardown
returns pooled DB connections.
"""

from __future__ import annotations

import json
import os
import logging
import secrets
import sys
from datetime import timedelta, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO
from flask_wtf import CSRFProtect

import config
from auth_session import load_request_user
from constants import APP_VERSION, AUTH_COOKIE, get_db_connection_string, postgres_dsn_parts, redact_postgres_dsn, sanitize_postgres_dsn
from database import close_db, get_db_identity, init_database, init_db_pool
from janitor import start_janitor
from realtime import channels as realtime_channels
from routes_account import register_account_routes
from routes_auth import register_auth_routes
from secrets_policy import persist_secrets_enabled, scrub_secrets_for_persist

# threading (default) or eventlet; wsgi.py monkey-patches before importing this module.
CHANSYNC_SOCKETIO_ASYNC = os.environ.get("CHANSYNC_SOCKETIO_ASYNC", "threading").strip().lower()


def _log_startup_banner(settings: Dict[str, Any], settings_file: Optional[Path]) -> None:
    """Log a boot banner that makes 'wrong DB / wrong config' obvious."""
    cfg_path = Path(settings_file) if settings_file else None
    dsn = get_db_connection_string(settings)
    parts = postgres_dsn_parts(dsn)

    logging.info("==================== ChanSync Boot ====================")
    logging.info("ChanSync version: %s", APP_VERSION)
    logging.info(
        "Settings file: %s (exists=%s)",
        str(cfg_path) if cfg_path else "<none>",
        bool(cfg_path and cfg_path.exists()),
    )
    logging.info(
        "Configured DB: host=%s port=%s db=%s user=%s",
        parts.get("host"), parts.get("port"), parts.get("db"), parts.get("user"),
    )
    logging.info("Configured DSN: %s", redact_postgres_dsn(dsn))
    logging.info("Root domain: %s (alt domains: %s)", config.root_domain(settings), ", ".join(config.alt_domains(settings)) or "-")
    logging.info("=======================================================")


def create_app(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] = None,
    settings_file: Optional[Path] = None,
) -> tuple[Flask, SocketIO]:
    """Create and configure the Flask + Socket.IO application.

    This function does **not** start a server. It is safe to import from a
    Gunicorn `wsgi.py` module.
    """

    settings_file = Path(settings_file) if isinstance(settings_file, str) else settings_file

    # ───── Flask App Core ─────
    app = Flask(__name__, static_folder="static", template_folder="templates")
    app.config["CHANSYNC_SETTINGS_FILE"] = str(settings_file) if settings_file else None
    app.config["CHANSYNC_SETTINGS"] = settings

    app.secret_key = _ensure_secret_key(settings, settings_file)

    cookie_secure = bool(settings.get("cookie_secure", False) or settings.get("https", False))
    cookie_samesite = settings.get("cookie_samesite") or "Lax"

    app.config.update(
        SECRET_KEY=app.secret_key,
        JWT_SECRET_KEY=_ensure_jwt_secret(settings, settings_file),
        JWT_TOKEN_LOCATION=["cookies"],
        JWT_ACCESS_COOKIE_NAME=AUTH_COOKIE,
        JWT_ACCESS_COOKIE_PATH="/",
        JWT_COOKIE_SECURE=cookie_secure,
        JWT_COOKIE_SAMESITE=cookie_samesite,
        # Account forms carry their own Flask-WTF token; the auth cookie is
        # never sent with a JWT double-submit token.
        JWT_COOKIE_CSRF_PROTECT=False,
        JWT_SESSION_COOKIE=False,
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=config.auth_cookie_days(settings)),
        # CSRF is verified per form handler (webserver.verify_csrf).
        WTF_CSRF_CHECK_DEFAULT=False,
        WTF_CSRF_ENABLED=bool(settings.get("csrf_enabled", True)),
        RATELIMIT_ENABLED=bool(settings.get("rate_limit_enabled", True)),
    )

    CSRFProtect(app)
    JWTManager(app)

    # ------------------------------------------------------------------
    # Baseline security headers
    # ------------------------------------------------------------------
    # Override via server_config.json:
    #   - content_security_policy
    #   - x_frame_options
    #   - referrer_policy
    #   - hsts_max_age / hsts_include_subdomains
    @app.after_request
    def _add_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault(
            "Referrer-Policy",
            str(settings.get("referrer_policy") or "strict-origin-when-cross-origin"),
        )
        resp.headers.setdefault("X-Frame-Options", str(settings.get("x_frame_options") or "DENY"))

        csp = settings.get("content_security_policy") or (
            "default-src 'self'; "
            "base-uri 'self'; "
            "object-src 'none'; "
            "frame-ancestors 'none'; "
            "script-src 'self'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data: https:; "
            "connect-src 'self' ws: wss:"
        )
        resp.headers.setdefault("Content-Security-Policy", str(csp))

        # Only send HSTS when HTTPS is in use.
        if cookie_secure:
            hsts = f"max-age={int(settings.get('hsts_max_age') or 31536000)}"
            if bool(settings.get("hsts_include_subdomains", True)):
                hsts += "; includeSubDomains"
            resp.headers.setdefault("Strict-Transport-Security", hsts)
        return resp

    storage_uri = settings.get("rate_limit_storage_uri") or "memory://"
    if limiter is None:
        limiter = Limiter(
            key_func=get_remote_address,
            storage_uri=storage_uri,
        )
    limiter.init_app(app)
    # Decorated views only hold a weak reference; the app keeps the limiter alive.
    app.extensions["chansync_limiter"] = limiter

    app.before_request(load_request_user)
    app.teardown_appcontext(close_db)

    # Boot banner (helps catch wrong config / wrong DB early)
    _log_startup_banner(settings, settings_file)

    # ───── Initialize DB ─────
    with app.app_context():
        if settings.get("database_url"):
            settings["database_url"] = str(sanitize_postgres_dsn(str(settings["database_url"])))
        init_db_pool(
            minconn=int(settings.get("db_pool_min", 1)),
            maxconn=int(settings.get("db_pool_max", 10)),
            dsn=str(settings.get("database_url")) if settings.get("database_url") else None,
        )
        init_database()

        try:
            ident = get_db_identity()
            logging.info(
                "Connected DB: user=%s db=%s server=%s:%s",
                ident.get("current_user"),
                ident.get("current_database"),
                ident.get("server_addr"),
                ident.get("server_port"),
            )
        except Exception as exc:
            logging.warning("Could not read DB identity: %s", exc)

    # ───── SocketIO Setup ─────
    # Engine.IO gets its own cookie name so it never overwrites the auth cookie.
    async_mode = "eventlet" if CHANSYNC_SOCKETIO_ASYNC == "eventlet" else "threading"
    app.config["CHANSYNC_SOCKETIO_ASYNC_MODE"] = async_mode

    socketio = SocketIO(
        app,
        async_mode=async_mode,
        cookie="chansync_io",
        logger=False,
        engineio_logger=False,
        ping_interval=20,
        ping_timeout=15,
        message_queue=(settings.get("socketio_message_queue") or None),
    )
    # Route handlers reload channels through this instance.
    app.config["CHANSYNC_SOCKETIO"] = socketio

    @socketio.on_error_default
    def _socketio_default_error_handler(e):
        logging.exception("Socket.IO handler error: %s", e)

    # ───── Routes ─────
    register_auth_routes(app, settings, limiter=limiter)
    register_account_routes(app, settings, limiter=limiter)
    realtime_channels.register(socketio, settings)

    return app, socketio


def run_web_server(
    settings: Dict[str, Any],
    limiter: Optional[Limiter] = None,
    settings_file: Optional[Path] = None,
) -> None:
    """Build the app, start the janitor, then serve (dev / single-process)."""

    app, socketio = create_app(settings, limiter=limiter, settings_file=settings_file)

    host = settings.get("host") or "0.0.0.0"
    port = int(settings.get("port") or 5000)
    debug = bool(settings.get("debug") or False)

    https_enabled = bool(settings.get("https", False))
    ssl_cert = settings.get("ssl_cert_file")
    ssl_key = settings.get("ssl_key_file")
    ssl_context = None

    if https_enabled:
        if ssl_cert and ssl_key and os.path.exists(str(ssl_cert)) and os.path.exists(str(ssl_key)):
            ssl_context = (str(ssl_cert), str(ssl_key))
        else:
            logging.warning("https=true but ssl_cert_file/ssl_key_file missing or not found. Falling back to HTTP.")
            https_enabled = False

    scheme = "https" if https_enabled else "http"
    logging.info("Starting ChanSync on %s://%s:%s (debug=%s)", scheme, host, port, debug)

    # With several Gunicorn workers run janitor_runner.py instead.
    start_janitor(settings)

    class _SocketIOAccessFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            return "/socket.io/" not in record.getMessage()

    logging.getLogger("werkzeug").addFilter(_SocketIOAccessFilter())

    use_reloader = bool(debug and app.config.get("CHANSYNC_SOCKETIO_ASYNC_MODE") == "threading")
    socketio.run(
        app,
        host=host,
        port=port,
        debug=debug,
        ssl_context=ssl_context,
        use_reloader=use_reloader,
        log_output=False,
    )


# ───── Helpers ─────
def _ensure_secret_key(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    key = settings.get("secret_key") or os.getenv("SECRET_KEY")
    if key:
        return key

    key = secrets.token_urlsafe(64)
    settings["secret_key"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("secret_key generated and saved to settings.")
    else:
        logging.warning("Generated a one-off secret_key (NOT saved). CSRF tokens will break on restart.")
    return key


def _ensure_jwt_secret(
    settings: Dict[str, Any],
    settings_file: Optional[Path],
) -> str:
    # Prefer explicit config, then env var. Only persist what we generated.
    key = settings.get("jwt_secret")
    if key:
        return str(key)

    env_key = os.getenv("JWT_SECRET_KEY")
    if env_key and str(env_key).strip():
        return str(env_key).strip()

    key = secrets.token_hex(32)
    settings["jwt_secret"] = key
    if _persist_generated_key(settings, settings_file):
        logging.info("jwt_secret generated and saved to settings.")
    else:
        logging.warning("Generated a one-off jwt_secret (NOT saved). Logins will break on restart.")
    return key


def _persist_generated_key(settings: Dict[str, Any], settings_file: Optional[Path]) -> bool:
    if not persist_secrets_enabled():
        return False
    if not settings_file:
        return False
    if settings_file.suffix.lower() != ".json":
        logging.warning("Unsupported settings file format: %s", settings_file)
        return False

    # Only merge into a valid JSON file; back up anything else first.
    existing: dict | None = None
    if settings_file.exists():
        try:
            with settings_file.open("r", encoding="utf-8") as fp:
                existing = json.load(fp)
        except (OSError, ValueError):
            existing = None

        if existing is None:
            ts = datetime.now().strftime("%Y%m%d-%H%M%S")
            bad_path = settings_file.with_suffix(settings_file.suffix + f".bad-{ts}")
            try:
                settings_file.rename(bad_path)
            except OSError as exc:
                logging.warning("Could not back up invalid settings file: %s", exc)
                return False
            logging.warning("Backed up invalid settings file to: %s", bad_path)

    merged = dict(existing or {})
    merged.update(scrub_secrets_for_persist(settings))
    try:
        with settings_file.open("w", encoding="utf-8") as fp:
            json.dump(merged, fp, indent=2)
    except OSError as exc:
        print(f"Could not persist secrets to {settings_file}: {exc}", file=sys.stderr)
        return False
    return True
