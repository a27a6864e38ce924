"""wsgi.py

Gunicorn entrypoint for ChanSync.

Run (example):
  gunicorn -c gunicorn_conf.py wsgi:app

Notes:
- For multi-worker Socket.IO set socketio_message_queue (Redis) in the config.
- Do NOT start the janitor inside Gunicorn workers; run janitor_runner.py
  as a separate service.
"""

from __future__ import annotations

import os

# gunicorn_conf.py runs eventlet workers; patch before anything imports socket/threading.
os.environ.setdefault("CHANSYNC_SOCKETIO_ASYNC", "eventlet")
if os.environ["CHANSYNC_SOCKETIO_ASYNC"].strip().lower() == "eventlet":
    import eventlet

    eventlet.monkey_patch()

from pathlib import Path

from constants import CONFIG_FILE
from main import load_settings, apply_env_overrides, configure_logging
from server_init import create_app


def _resolve_config_path() -> Path:
    return Path(os.environ.get("CHANSYNC_CONFIG") or CONFIG_FILE)


_settings_path = _resolve_config_path()
_settings = load_settings(_settings_path)
apply_env_overrides(_settings)
configure_logging(_settings)

app, socketio = create_app(_settings, limiter=None, settings_file=_settings_path)
app.config["CHANSYNC_GUNICORN"] = True
