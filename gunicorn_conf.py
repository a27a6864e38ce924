"""gunicorn_conf.py

Default Gunicorn config for ChanSync + Flask-SocketIO using Eventlet.

Environment variables:
  CHANSYNC_BIND=0.0.0.0:5000
  CHANSYNC_WORKERS=1
  CHANSYNC_GUNICORN_LOGLEVEL=info
  CHANSYNC_GUNICORN_TIMEOUT=60
"""

from __future__ import annotations

import os

bind = os.environ.get("CHANSYNC_BIND", "0.0.0.0:5000")
# Loaded channels live in process memory; more than one worker needs sticky sessions.
workers = int(os.environ.get("CHANSYNC_WORKERS", "1"))
worker_class = "eventlet"

timeout = int(os.environ.get("CHANSYNC_GUNICORN_TIMEOUT", "60"))
keepalive = int(os.environ.get("CHANSYNC_GUNICORN_KEEPALIVE", "5"))

loglevel = os.environ.get("CHANSYNC_GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("CHANSYNC_GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("CHANSYNC_GUNICORN_ERRORLOG", "-")

# Needed for X-Forwarded-For / Proto behind a reverse proxy.
forwarded_allow_ips = os.environ.get("CHANSYNC_FORWARDED_ALLOW_IPS", "127.0.0.1")
