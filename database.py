#!/usr/bin/env python3
"""
ChanSync – database helpers (PostgreSQL version)

• PostgreSQL via Flask g (one connection per request)
• Optional ThreadedConnectionPool
• Schema bootstrap: users, channels, password_reset, audit_log
• Account, channel and password-reset operations used by the web routes

User-facing failures are raised as AccountError; the message is safe to show
on a page. Driver errors are logged and re-raised as a generic AccountError.
"""

import functools
import logging
from datetime import datetime, timezone

import psycopg2
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool
from flask import g

from constants import (
    ADMIN_RANK,
    MAX_PASSWORD_LENGTH,
    MAX_PROFILE_FIELD_LENGTH,
    get_db_connection_string,
    sanitize_postgres_dsn,
    redact_postgres_dsn,
)
from utilities import is_valid_channel_name, is_valid_user_name

INVALID_LOGIN = "Invalid username/password combination"
DATABASE_ERROR = "Database error. Please contact an administrator if this persists."


class AccountError(Exception):
    """A failed account/channel operation with a message fit for the user."""


# ----------------------------------------------------------------------
# Connection helpers
# ----------------------------------------------------------------------

# Optional global connection pool. Enabled by calling init_db_pool().
_POOL: ThreadedConnectionPool | None = None
_DSN: str | None = None


def init_db_pool(minconn: int = 1, maxconn: int = 10, dsn: str | None = None) -> None:
    """Initialise a global ThreadedConnectionPool.

    Safe to call multiple times (no-op after first init).
    """
    global _POOL, _DSN
    if _POOL is not None:
        return

    _DSN = str(sanitize_postgres_dsn(dsn or get_db_connection_string()))

    try:
        _POOL = ThreadedConnectionPool(minconn=int(minconn), maxconn=int(maxconn), dsn=_DSN)
        logging.info("Postgres connection pool ready (min=%s max=%s)", minconn, maxconn)
    except psycopg2.Error as e:
        _POOL = None
        logging.warning("Could not initialise Postgres pool; falling back to direct connects: %s", e)


def _acquire_conn():
    """Acquire a connection either from the pool or by direct connect.

    Returns (conn, from_pool: bool)
    """
    if _POOL is not None:
        return _POOL.getconn(), True
    return psycopg2.connect(_DSN or get_db_connection_string()), False


def _release_conn(conn, from_pool: bool) -> None:
    if conn is None:
        return
    if _POOL is not None and from_pool:
        try:
            # Ensure a clean connection is returned to the pool.
            conn.rollback()
        except psycopg2.Error:
            pass
        _POOL.putconn(conn)
    else:
        conn.close()


def get_db() -> psycopg2.extensions.connection:
    """Return one psycopg2 connection per Flask request context (stored in g.db)."""
    if not hasattr(g, "db"):
        conn, from_pool = _acquire_conn()
        g.db = conn
        g.db_from_pool = from_pool
    return g.db


def close_db(error=None):
    """Teardown: release the connection stored in g.db (if any)."""
    db_conn = g.pop("db", None)
    from_pool = bool(g.pop("db_from_pool", False))
    if db_conn is not None:
        try:
            _release_conn(db_conn, from_pool)
        except psycopg2.Error as e:
            logging.error("Error releasing DB connection: %s", e)
    if error:
        logging.error("DB teardown error: %s", error)


def _db_op(fn):
    """Turn driver errors into a generic AccountError after rolling back."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except psycopg2.Error as e:
            logging.error("DB error in %s: %s", fn.__name__, e)
            conn = g.get("db")
            if conn is not None:
                try:
                    conn.rollback()
                except psycopg2.Error:
                    pass
            raise AccountError(DATABASE_ERROR) from e

    return wrapper


# ----------------------------------------------------------------------
# Schema
# ----------------------------------------------------------------------
def _create_full_schema():
    """Create all tables if missing. Idempotent."""
    conn, from_pool = _acquire_conn()
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id             SERIAL PRIMARY KEY,
                    name           TEXT NOT NULL,
                    password       TEXT NOT NULL,
                    global_rank    INTEGER NOT NULL DEFAULT 1,
                    email          TEXT NOT NULL DEFAULT '',
                    profile_image  TEXT NOT NULL DEFAULT '',
                    profile_text   TEXT NOT NULL DEFAULT '',
                    ip             TEXT,
                    created_at     TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
                );
                CREATE UNIQUE INDEX IF NOT EXISTS users_name_unique_ci ON users (LOWER(name));
                CREATE INDEX IF NOT EXISTS users_ip_idx ON users (ip);

                CREATE TABLE IF NOT EXISTS channels (
                    id          SERIAL PRIMARY KEY,
                    name        TEXT NOT NULL,
                    owner       TEXT NOT NULL,
                    created_at  TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
                );
                CREATE UNIQUE INDEX IF NOT EXISTS channels_name_unique_ci ON channels (LOWER(name));
                CREATE INDEX IF NOT EXISTS channels_owner_idx ON channels (LOWER(owner));

                /* One outstanding reset per account; a new request replaces the old one. */
                CREATE TABLE IF NOT EXISTS password_reset (
                    name        TEXT NOT NULL,
                    ip          TEXT,
                    email       TEXT NOT NULL,
                    hash        TEXT UNIQUE NOT NULL,
                    expire      TIMESTAMP WITH TIME ZONE NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS password_reset_name_unique_ci ON password_reset (LOWER(name));

                CREATE TABLE IF NOT EXISTS audit_log (
                    id          SERIAL PRIMARY KEY,
                    actor       TEXT,
                    action      TEXT NOT NULL,
                    target      TEXT,
                    details     TEXT,
                    created_at  TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
        conn.commit()
    except psycopg2.Error:
        conn.rollback()
        logging.exception("Schema bootstrap failed")
        raise
    finally:
        _release_conn(conn, from_pool)


def init_database():
    """Create or patch the schema. Called once at application startup."""
    logging.info("Initialising DB…")
    _create_full_schema()
    logging.info("DB ready at %s", redact_postgres_dsn(get_db_connection_string()))


def get_db_identity() -> dict:
    """Return runtime identity information for the current DB connection."""
    conn = get_db()
    out = {"current_user": None, "current_database": None, "server_addr": None, "server_port": None}
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT current_user, current_database(), inet_server_addr(), inet_server_port();")
            row = cur.fetchone()
        if row:
            out["current_user"] = row[0]
            out["current_database"] = row[1]
            out["server_addr"] = str(row[2]) if row[2] is not None else None
            out["server_port"] = int(row[3]) if row[3] is not None else None
    except psycopg2.Error as exc:
        out["error"] = str(exc)
    return out


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------
_USER_COLUMNS = "id, name, password, global_rank, email, profile_image, profile_text, ip, created_at"


def _fetch_user(cur, name: str):
    cur.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE LOWER(name) = LOWER(%s);", (name,))
    return cur.fetchone()


@_db_op
def get_user(name: str) -> dict:
    """Return the user row as a dict. Raises AccountError if missing."""
    if not is_valid_user_name(name):
        raise AccountError("User does not exist")
    conn = get_db()
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        row = _fetch_user(cur, name)
    if not row:
        raise AccountError("User does not exist")
    return dict(row)


@_db_op
def verify_login(name: str, password: str) -> dict:
    """Check name/password. Returns the user row or raises AccountError(INVALID_LOGIN).

    Legacy hashes are upgraded in place on success.
    """
    from security import verify_password_and_upgrade

    if not is_valid_user_name(name) or not isinstance(password, str):
        raise AccountError(INVALID_LOGIN)
    password = password[:MAX_PASSWORD_LENGTH]

    conn = get_db()
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        row = _fetch_user(cur, name)
    if not row:
        raise AccountError(INVALID_LOGIN)

    ok, upgraded_hash = verify_password_and_upgrade(password, row["password"])
    if not ok:
        raise AccountError(INVALID_LOGIN)

    if upgraded_hash:
        try:
            with conn.cursor() as cur:
                cur.execute("UPDATE users SET password = %s WHERE id = %s;", (upgraded_hash, row["id"]))
            conn.commit()
            row["password"] = upgraded_hash
        except psycopg2.Error as e:
            conn.rollback()
            logging.warning("Could not upgrade password hash for %s: %s", row["name"], e)
    return dict(row)


@_db_op
def count_accounts_for_ip(ip: str) -> int:
    if not ip:
        return 0
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM users WHERE ip = %s;", (ip,))
        return int((cur.fetchone() or [0])[0])


@_db_op
def register_user(name: str, password: str, email: str, ip: str | None, max_accounts_per_ip: int | None = None) -> dict:
    """Create an account. Raises AccountError for invalid/taken names or IP quota."""
    from security import hash_password

    if not is_valid_user_name(name):
        raise AccountError(
            "Invalid username.  Usernames must be 1-20 characters long and consist only "
            "of characters a-z, A-Z, 0-9, -, _, and accented letters."
        )

    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM users WHERE LOWER(name) = LOWER(%s) LIMIT 1;", (name,))
        if cur.fetchone() is not None:
            raise AccountError("Username is already registered")

    if max_accounts_per_ip and ip and count_accounts_for_ip(ip) >= max_accounts_per_ip:
        raise AccountError("You have registered too many accounts from this computer.")

    pw_hash = hash_password(password[:MAX_PASSWORD_LENGTH])
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                INSERT INTO users (name, password, global_rank, email, ip)
                VALUES (%s, %s, 1, %s, %s)
                RETURNING {_USER_COLUMNS};
                """,
                (name, pw_hash, email or "", ip),
            )
            row = cur.fetchone()
        conn.commit()
    except psycopg2.IntegrityError:
        conn.rollback()
        raise AccountError("Username is already registered")
    return dict(row)


@_db_op
def set_password(name: str, password: str) -> None:
    from security import hash_password

    conn = get_db()
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET password = %s WHERE LOWER(name) = LOWER(%s);",
            (hash_password(password[:MAX_PASSWORD_LENGTH]), name),
        )
        updated = cur.rowcount
    conn.commit()
    if not updated:
        raise AccountError("User does not exist")


@_db_op
def set_global_rank(name: str, rank: int) -> None:
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("UPDATE users SET global_rank = %s WHERE LOWER(name) = LOWER(%s);", (int(rank), name))
        updated = cur.rowcount
    conn.commit()
    if not updated:
        raise AccountError("User does not exist")


@_db_op
def get_email(name: str) -> str:
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("SELECT email FROM users WHERE LOWER(name) = LOWER(%s);", (name,))
        row = cur.fetchone()
    if not row:
        raise AccountError("User does not exist")
    return row[0] or ""


@_db_op
def set_email(name: str, email: str) -> None:
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("UPDATE users SET email = %s WHERE LOWER(name) = LOWER(%s);", (email or "", name))
        updated = cur.rowcount
    conn.commit()
    if not updated:
        raise AccountError("User does not exist")


@_db_op
def get_profile(name: str) -> dict:
    """Return {"image": str, "text": str} for a user."""
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute(
            "SELECT profile_image, profile_text FROM users WHERE LOWER(name) = LOWER(%s);",
            (name,),
        )
        row = cur.fetchone()
    if not row:
        raise AccountError("User does not exist")
    return {"image": row[0] or "", "text": row[1] or ""}


@_db_op
def set_profile(name: str, profile: dict) -> None:
    image = str(profile.get("image") or "")[:MAX_PROFILE_FIELD_LENGTH]
    text = str(profile.get("text") or "")[:MAX_PROFILE_FIELD_LENGTH]
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET profile_image = %s, profile_text = %s WHERE LOWER(name) = LOWER(%s);",
            (image, text, name),
        )
        updated = cur.rowcount
    conn.commit()
    if not updated:
        raise AccountError("User does not exist")


@_db_op
def list_site_admins() -> list[dict]:
    conn = get_db()
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT name, email, global_rank FROM users WHERE global_rank >= %s ORDER BY LOWER(name);",
            (ADMIN_RANK,),
        )
        return [dict(r) for r in cur.fetchall()]


# ----------------------------------------------------------------------
# Channels
# ----------------------------------------------------------------------
@_db_op
def list_user_channels(owner: str) -> list[dict]:
    conn = get_db()
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT name, owner, created_at FROM channels WHERE LOWER(owner) = LOWER(%s) ORDER BY created_at, id;",
            (owner,),
        )
        return [dict(r) for r in cur.fetchall()]


@_db_op
def lookup_channel(name: str) -> dict:
    if not is_valid_channel_name(name):
        raise AccountError("Invalid channel name")
    conn = get_db()
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SELECT id, name, owner, created_at FROM channels WHERE LOWER(name) = LOWER(%s);", (name,))
        row = cur.fetchone()
    if not row:
        raise AccountError("Channel does not exist")
    return dict(row)


@_db_op
def register_channel(name: str, owner: str) -> dict:
    if not name:
        raise AccountError("Channel name must not be empty")
    if not is_valid_channel_name(name):
        raise AccountError(
            "Invalid channel name.  Channel names may consist of 1-30 characters "
            "a-z, A-Z, 0-9, -, and _"
        )

    conn = get_db()
    try:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute("SELECT 1 FROM channels WHERE LOWER(name) = LOWER(%s) LIMIT 1;", (name,))
            if cur.fetchone() is not None:
                raise AccountError(f"Channel '{name}' is already registered")
            cur.execute(
                "INSERT INTO channels (name, owner) VALUES (%s, %s) RETURNING id, name, owner, created_at;",
                (name, owner),
            )
            row = cur.fetchone()
        conn.commit()
    except psycopg2.IntegrityError:
        conn.rollback()
        raise AccountError(f"Channel '{name}' is already registered")
    return dict(row)


@_db_op
def drop_channel(name: str) -> None:
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("DELETE FROM channels WHERE LOWER(name) = LOWER(%s);", (name,))
        deleted = cur.rowcount
    conn.commit()
    if not deleted:
        raise AccountError("Channel does not exist")


# ----------------------------------------------------------------------
# Password resets
# ----------------------------------------------------------------------
@_db_op
def add_password_reset(*, ip: str | None, name: str, email: str, hash: str, expire: datetime) -> None:
    """Store a reset request, replacing any outstanding one for the same account.

    The row is keyed on the account's stored name, whatever case was typed.
    """
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO password_reset (name, ip, email, hash, expire)
            SELECT u.name, %s, %s, %s, %s FROM users u WHERE LOWER(u.name) = LOWER(%s)
            ON CONFLICT ((LOWER(name))) DO UPDATE
               SET name = EXCLUDED.name,
                   ip = EXCLUDED.ip,
                   email = EXCLUDED.email,
                   hash = EXCLUDED.hash,
                   expire = EXCLUDED.expire;
            """,
            (ip, email, hash, expire, name),
        )
        stored = cur.rowcount
    conn.commit()
    if not stored:
        raise AccountError("User does not exist")


@_db_op
def lookup_password_reset(hash: str) -> dict:
    conn = get_db()
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SELECT name, ip, email, hash, expire FROM password_reset WHERE hash = %s;", (hash,))
        row = cur.fetchone()
    if not row:
        raise AccountError("Invalid password reset link")
    return dict(row)


@_db_op
def delete_password_reset(hash: str) -> None:
    conn = get_db()
    with conn.cursor() as cur:
        cur.execute("DELETE FROM password_reset WHERE hash = %s;", (hash,))
    conn.commit()


def cleanup_expired_password_resets() -> int:
    """Delete expired reset rows. Runs outside a request (janitor)."""
    conn, from_pool = _acquire_conn()
    try:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM password_reset WHERE expire <= %s;", (datetime.now(timezone.utc),))
            deleted = cur.rowcount
        conn.commit()
        return int(deleted or 0)
    except psycopg2.Error:
        conn.rollback()
        raise
    finally:
        _release_conn(conn, from_pool)
