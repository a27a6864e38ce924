#!/usr/bin/env python3
"""security.py

Password hashing and account event logging.

  - New hashes: Argon2id (argon2-cffi)
  - Back-compat: verify legacy PBKDF2 hashes (salt_hex:hash_b64)
  - Upgrade path: verify_password_and_upgrade() returns a new Argon2id hash
"""

from __future__ import annotations

import base64
import hmac
import logging
from typing import Optional, Tuple

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import psycopg2

from database import get_db

EVENT_LOG = logging.getLogger("chansync.events")

# ────────────────────────────────────────────────────────────
# Event / audit logging
# ────────────────────────────────────────────────────────────

def log_audit_event(actor: str, action: str, target: str | None = None, details: str | None = None) -> None:
    """Write an account event to the event log and the audit_log table.

    The event log line is "[action] actor details" (target when there are no
    details), e.g. "[account] 10.0.0.1 changed password for alice".
    """
    EVENT_LOG.info("[%s] %s %s", action, actor or "-", details or target or "")

    try:
        conn = get_db()
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO audit_log (actor, action, target, details)
                VALUES (%s, %s, %s, %s);
                """,
                (actor, action, target, details),
            )
        conn.commit()
    except psycopg2.Error as e:
        logging.error("Failed to write audit log (%s, %s, %s, %s): %s", actor, action, target, details, e)


# ────────────────────────────────────────────────────────────
# Password hashing utilities
# ────────────────────────────────────────────────────────────

# Legacy PBKDF2 parameters (kept only for verifying old hashes)
_LEGACY_PBKDF2_ITERS = 100_000
_LEGACY_PBKDF2_LEN = 32

_PWH = PasswordHasher(
    time_cost=3,
    memory_cost=65536,  # KiB (64 MiB)
    parallelism=1,
    hash_len=32,
    salt_len=16,
)


def _pbkdf2_legacy(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_LEGACY_PBKDF2_LEN,
        salt=salt,
        iterations=_LEGACY_PBKDF2_ITERS,
    )
    return kdf.derive(password.encode("utf-8"))


def _is_legacy_pbkdf2_hash(stored_hash: str) -> bool:
    # Expected: <32 hex chars>:<base64...>
    if not stored_hash or ":" not in stored_hash:
        return False
    left, right = stored_hash.split(":", 1)
    if len(left) != 32:
        return False
    try:
        bytes.fromhex(left)
    except ValueError:
        return False
    return bool(right)


def _verify_legacy_pbkdf2(password: str, stored_hash: str) -> bool:
    salt_hex, hashed_b64 = stored_hash.split(":", 1)
    new_hash = base64.urlsafe_b64encode(_pbkdf2_legacy(password, bytes.fromhex(salt_hex))).decode("utf-8")
    return hmac.compare_digest(new_hash, hashed_b64)


def hash_password(password: str) -> str:
    """Hash plaintext password using Argon2id."""
    return _PWH.hash(password)


def verify_password_and_upgrade(password: str, stored_hash: str) -> Tuple[bool, Optional[str]]:
    """Verify password; return a fresh Argon2id hash when the stored one is
    legacy or uses outdated parameters.

    Returns: (ok, upgraded_hash_or_None)
    """
    if not stored_hash:
        return False, None

    if stored_hash.startswith("$argon2"):
        try:
            _PWH.verify(stored_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False, None
        if _PWH.check_needs_rehash(stored_hash):
            return True, _PWH.hash(password)
        return True, None

    if _is_legacy_pbkdf2_hash(stored_hash):
        if _verify_legacy_pbkdf2(password, stored_hash):
            return True, _PWH.hash(password)
        return False, None

    # Unknown format
    return False, None
