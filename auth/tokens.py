"""
auth/tokens.py -- Password hashing, session id, and cookie utilities.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). The work factor comes
       from Settings.bcrypt_rounds. Input is capped at 72 UTF-8 bytes and
       never altered (no stripping, no truncation before hashing). The _DUMMY_HASH constant enables timing
       equalization in the authenticator so response time does not reveal
       whether an identifier exists.

  Session ids: secrets.token_urlsafe(32) gives 256 bits of entropy. The raw id
       goes to the client cookie only; the store keeps HMAC-SHA256(SECRET_KEY,
       raw_id) so a leaked database does not yield usable session cookies.
       HMAC rather than bcrypt because the lookup must be O(1) and the input
       is already high-entropy.

  Cookie: httponly, samesite=strict, secure when SECURE_COOKIES=true.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets

import bcrypt

from core.config import get_settings

logger = logging.getLogger("schooladmin.auth")

_settings = get_settings()

MAX_PASSWORD_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def password_too_long(plain: str) -> bool:
    """True if the UTF-8 encoding of plain exceeds bcrypt's 72-byte input limit."""
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects input beyond 72 bytes, so callers must validate with
    password_too_long() first. The API models do this for every new password.
    """
    if password_too_long(plain):
        raise ValueError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes")
    salt = bcrypt.gensalt(rounds=rounds or _settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A password longer than 72 bytes can never have been stored. It still pays
    for one bcrypt comparison on its first 72 bytes and then reports a mismatch.
    """
    candidate = plain.encode("utf-8")
    too_long = len(candidate) > MAX_PASSWORD_BYTES
    try:
        matched = bcrypt.checkpw(candidate[:MAX_PASSWORD_BYTES], hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash. Treat as a mismatch rather than a 500.
        logger.warning("Stored password hash could not be parsed")
        return False
    return matched and not too_long


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("schooladmin_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Burn one bcrypt comparison for a login that has no real hash to check."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def hash_session_id(raw_session_id: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_session_id) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_session_id.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, raw_session_id: str) -> None:
    """Write the opaque session id as an httpOnly cookie on the response.

    max_age matches the server-side absolute lifetime so both expire together.
    Inactivity expiry is enforced server-side only.
    """
    response.set_cookie(
        _settings.session_cookie_name,
        value=raw_session_id,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.session_lifetime_seconds,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(
        _settings.session_cookie_name,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
    )
