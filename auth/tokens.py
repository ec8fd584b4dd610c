"""
auth/tokens.py -- Password hashing, token hashing, signed state, and cookies.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper) with the cost factor
       from Settings.bcrypt_rounds (>= 12 outside DEBUG). dummy_hash(rounds)
       enables timing equalization: callers always run one bcrypt comparison
       at their own cost factor whether or not the account exists [C1].

  Bearer tokens (sessions, verification, reset, 2FA challenges): generated by
       core.crypto.generate_token() and persisted only as
       HMAC-SHA256(token_key, raw). Lookup is O(1) by hash; bcrypt's slowness
       is unnecessary because the tokens carry 256+ bits of entropy.

  OAuth link state: python-jose HS256 JWT bound to (user_id, provider) with a
       random nonce and a short expiry. decode returns None on any failure --
       callers treat that as a forged or stale state.

  SECRET_KEY: sourced from core.config.get_settings(). All derived keys come
       from the KeyRing built here once per process [M6].

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is
the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from functools import lru_cache

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.crypto import KeyRing, hash_token

logger = logging.getLogger("gatekeeper.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

SESSION_COOKIE = "session_token"

# bcrypt only looks at the first 72 bytes; longer inputs are rejected up front
BCRYPT_MAX_BYTES = 72


@lru_cache
def get_keyring() -> KeyRing:
    """Return the process-wide KeyRing derived from Settings."""
    return KeyRing.from_settings(get_settings())


def hash_secret_token(raw: str, key: bytes | None = None) -> str:
    """Return the storable HMAC of a raw bearer token."""
    return hash_token(raw, key if key is not None else get_keyring().token_key)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must reject inputs longer than BCRYPT_MAX_BYTES first; the
    credential manager does so as part of its strength check.
    """
    cost = rounds if rounds is not None else _settings.bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or over-long input: never a match
        return False


# Timing equalization [C1]: one dummy hash per cost factor, computed on first
# use, so a miss costs the same as a real comparison at that cost.
@lru_cache
def dummy_hash(rounds: int) -> str:
    return hash_password("gatekeeper_timing_dummy", rounds)


# ---------------------------------------------------------------------------
# OAuth link state (signed, short-lived)
# ---------------------------------------------------------------------------


def create_link_state(user_id: int, provider: str, now: datetime, expire_minutes: int | None = None) -> str:
    """Encode a signed state token binding an OAuth link attempt to (user, provider)."""
    minutes = expire_minutes if expire_minutes is not None else _settings.oauth_state_minutes
    payload = {
        "sub": str(user_id),
        "provider": provider,
        "purpose": "oauth_link",
        "nonce": secrets.token_urlsafe(16),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_link_state(state: str, now: datetime) -> dict | None:
    """Decode and verify a link state token. Returns the payload dict or None.

    Expiry is checked against the injected clock rather than wall time, so
    jose's own exp check is disabled and redone here.
    """
    try:
        payload = jwt.decode(state, _settings.secret_key, algorithms=[_ALGORITHM], options={"verify_exp": False})
    except JWTError:
        return None
    if payload.get("purpose") != "oauth_link" or "sub" not in payload or "provider" not in payload:
        return None
    exp = payload.get("exp")
    if not isinstance(exp, int) or exp <= int(now.timestamp()):
        return None
    return payload


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, max_age: int | None = None) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: defaults to the configured session lifetime.
    """
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age if max_age is not None else _settings.session_lifetime_hours * 3600,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(SESSION_COOKIE)
