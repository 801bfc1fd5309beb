"""Password gating for protected downloads."""

from __future__ import annotations

import enum
import logging

import bcrypt

from backend.exceptions import ValidationFailure

logger = logging.getLogger(__name__)

MAX_PASSWORD_LENGTH = 72  # bcrypt input limit in bytes

_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"qrshare-dummy-password", bcrypt.gensalt()).decode("utf-8")


class AccessDecision(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


def hash_password(password: str) -> str:
    """Hash a download password using bcrypt."""
    encoded = password.encode("utf-8")
    if not encoded or len(encoded) > MAX_PASSWORD_LENGTH:
        raise ValidationFailure(f"Password must be between 1 and {MAX_PASSWORD_LENGTH} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash.

    ``bcrypt.checkpw`` compares digests in constant time.
    """
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


def check_access(password_hash: str | None, supplied_password: str | None) -> AccessDecision:
    """Decide whether a download may proceed.

    Files without a password hash are public. For protected files a missing
    password still runs one bcrypt comparison so both failure paths cost the same.
    """
    if password_hash is None:
        return AccessDecision.ALLOWED
    if not supplied_password:
        verify_password("", _DUMMY_PASSWORD_HASH)
        return AccessDecision.DENIED
    if verify_password(supplied_password, password_hash):
        return AccessDecision.ALLOWED
    return AccessDecision.DENIED
