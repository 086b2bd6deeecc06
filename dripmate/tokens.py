"""
Token, email and username helpers for the registration workflow.
"""

from __future__ import annotations

import re
import secrets
import time
from typing import Optional

from dripmate.errors import InvalidEmailError

# Excludes 0/O and 1/I so tokens survive being read aloud or retyped.
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOKEN_LENGTH = 6
DEFAULT_TOKEN_PREFIX = "BREW"

USERNAME_MAX_BASE_LENGTH = 16
DEFAULT_USERNAME = "user"


def token_pattern(prefix: str = DEFAULT_TOKEN_PREFIX) -> re.Pattern:
    return re.compile(
        rf"^{re.escape(prefix)}-[{TOKEN_ALPHABET}]{{{TOKEN_LENGTH}}}$"
    )


def generate_token(prefix: str = DEFAULT_TOKEN_PREFIX) -> str:
    body = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))
    return f"{prefix}-{body}"


def normalize_email(email: Optional[str]) -> str:
    """Lowercase and trim an email, rejecting values without an ``@``."""
    if not email or not isinstance(email, str):
        raise InvalidEmailError("email required")
    normalized = email.strip().lower()
    if "@" not in normalized:
        raise InvalidEmailError("email must contain @")
    return normalized


def derive_username(email: str, now_ms: Optional[int] = None) -> str:
    """
    Build a username from the local part of an email.

    Non ``[A-Za-z0-9_]`` characters are dropped, the base is capped and a
    four digit suffix taken from the millisecond clock is appended.
    """
    local_part = email.split("@", 1)[0]
    base = re.sub(r"[^a-zA-Z0-9_]", "", local_part)[:USERNAME_MAX_BASE_LENGTH]
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = str(now_ms)[-4:]
    return f"{base or DEFAULT_USERNAME}_{suffix}"


def mask(value: Optional[str], visible: int = 8) -> str:
    """Shorten a credential for log lines."""
    if not value:
        return "<none>"
    if len(value) <= visible:
        return value
    return value[:visible] + "..."
