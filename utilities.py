"""utilities.py

Input validation and random token helpers shared by the account routes.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import string

_USER_NAME_RE = re.compile(r"[-\wÀ-ÿ]{1,20}", re.ASCII)
_CHANNEL_NAME_RE = re.compile(r"[\w-]{1,30}", re.ASCII)
_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s.]+")

# Ambiguous glyphs (j, l, o) are left out of generated passwords.
RECOVERY_PASSWORD_ALPHABET = "abcdefgihkmnpqrstuvwxyz0123456789"


def is_valid_user_name(name) -> bool:
    return isinstance(name, str) and bool(_USER_NAME_RE.fullmatch(name))


def is_valid_channel_name(name) -> bool:
    return isinstance(name, str) and bool(_CHANNEL_NAME_RE.fullmatch(name))


def is_valid_email(email) -> bool:
    if not isinstance(email, str) or len(email) > 254:
        return False
    return bool(_EMAIL_RE.fullmatch(email))


def random_salt(length: int) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def sha1(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def generate_password(length: int = 10) -> str:
    """Random password handed out by the recovery link."""
    return "".join(secrets.choice(RECOVERY_PASSWORD_ALPHABET) for _ in range(length))
