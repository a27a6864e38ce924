#!/usr/bin/env python3
"""adminctl.py

Account administration from the shell.

Usage:
  # Set a user's global rank (255 = site admin)
  python adminctl.py rank <name> <rank>

  # Manually reset a password (prints the new password)
  python adminctl.py resetpw <name>

  # Show rank, email and owned channels for a user
  python adminctl.py status <name>

  # List site admins
  python adminctl.py list
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from flask import Flask

from constants import CONFIG_FILE, get_db_connection_string, sanitize_postgres_dsn
from database import (
    AccountError,
    close_db,
    get_user,
    init_db_pool,
    list_site_admins,
    list_user_channels,
    set_global_rank,
    set_password,
)
from utilities import generate_password


def _dsn_from_server_config() -> str | None:
    """DSN from server_config.json, so adminctl talks to the same DB as the server."""
    path = Path(CONFIG_FILE)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    dsn = data.get("database_url")
    return str(sanitize_postgres_dsn(str(dsn))) if dsn else None


def cmd_rank(name: str, rank: int) -> int:
    set_global_rank(name, rank)
    print(f"Set global rank of {name} to {rank}")
    return 0


def cmd_resetpw(name: str) -> int:
    user = get_user(name)
    new_password = generate_password(10)
    set_password(user["name"], new_password)
    print(f"New password for {user['name']}: {new_password}")
    return 0


def cmd_status(name: str) -> int:
    user = get_user(name)
    channels = list_user_channels(user["name"])
    print(f"User: {user['name']}{' <' + user['email'] + '>' if user.get('email') else ''} (id={user['id']})")
    print(f"global rank: {user['global_rank']}")
    print(f"channels: {', '.join(c['name'] for c in channels) if channels else '(none)'}")
    return 0


def cmd_list() -> int:
    admins = list_site_admins()
    if not admins:
        print("(no site admins)")
        return 0
    for row in admins:
        print(f"- {row['name']}{' <' + row['email'] + '>' if row.get('email') else ''} (rank {row['global_rank']})")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="ChanSync account administration.")
    parser.add_argument(
        "--dsn",
        default=None,
        help="Override Postgres DSN (otherwise env, server_config.json, or constants.py fallback)",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_rank = sub.add_parser("rank", help="Set a user's global rank")
    p_rank.add_argument("name")
    p_rank.add_argument("rank", type=int)

    p_reset = sub.add_parser("resetpw", help="Set a new random password and print it")
    p_reset.add_argument("name")

    p_status = sub.add_parser("status", help="Show a user's rank and channels")
    p_status.add_argument("name")

    sub.add_parser("list", aliases=["ls"], help="List site admins")

    args = parser.parse_args()
    dsn = (
        args.dsn
        or os.getenv("DB_CONNECTION_STRING")
        or os.getenv("DATABASE_URL")
        or _dsn_from_server_config()
        or get_db_connection_string()
    )

    # The database helpers keep one connection per app context.
    app = Flask(__name__)
    app.teardown_appcontext(close_db)
    with app.app_context():
        init_db_pool(minconn=1, maxconn=1, dsn=dsn)
        try:
            if args.cmd == "rank":
                return cmd_rank(args.name, args.rank)
            if args.cmd == "resetpw":
                return cmd_resetpw(args.name)
            if args.cmd == "status":
                return cmd_status(args.name)
            return cmd_list()
        except AccountError as e:
            print(f"Error: {e}")
            return 1


if __name__ == "__main__":
    raise SystemExit(main())
