import logging
import threading
import time

import psycopg2

from database import cleanup_expired_password_resets


def run_janitor_once() -> int:
    """Delete expired password reset links. Returns the number removed."""
    try:
        n = cleanup_expired_password_resets()
    except psycopg2.Error as e:
        logging.error("[JANITOR] password reset cleanup error: %s", e)
        return 0
    if n:
        logging.info("[JANITOR] deleted %d expired password reset(s)", n)
    return n


def start_janitor(settings: dict):
    """Start the background cleanup loop in a daemon thread."""

    def _loop():
        while True:
            # Re-read settings each cycle so edits take effect live.
            try:
                interval = int(settings.get("janitor_interval_seconds", 300))
            except (TypeError, ValueError):
                interval = 300
            interval = max(10, min(interval, 3600))

            run_janitor_once()
            time.sleep(interval)

    t = threading.Thread(target=_loop, name="chansync_janitor", daemon=True)
    t.start()
    return t
