"""
auth/credentials.py -- Credential Manager: passwords, verification and reset tokens.

Security notes:
  [C1] verify_password() always runs exactly one bcrypt comparison. Unknown
       users and OAuth-only users are checked against a dummy hash built at
       the configured cost, so response time does not reveal whether an
       account exists.

  [C2] Reset tokens carry 512 bits, live 15 minutes, and are stored only as
       HMAC hashes. consume_reset_token() clears the token and installs the
       new hash in one conditional UPDATE: a second concurrent consumer finds
       nothing to update and gets InvalidToken.

  [C3] Issuing a verification or reset token overwrites the previous one, so
       at most one of each is ever live per user.

  Plaintext passwords and raw tokens are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from datetime import datetime, timedelta

from auth.errors import InvalidToken, WeakCredential
from auth.models import PasswordStrength
from auth.store import UserStore
from auth.tokens import BCRYPT_MAX_BYTES, dummy_hash, hash_password, hash_secret_token, verify_password
from core.config import Settings, get_settings
from core.crypto import RESET_TOKEN_BYTES, VERIFICATION_TOKEN_BYTES, generate_token
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatekeeper.auth.credentials")


class CredentialManager:
    """Owns password hashes and the single-use verification / reset tokens.

    Usage:
        creds = CredentialManager(user_store)
        creds.set_password(user_id, "Sn0wman!2024", initial=True)
        creds.verify_password(user_id, "Sn0wman!2024")   # True
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        token_key: bytes | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._token_key = token_key

    def _hash_token(self, raw: str) -> str:
        return hash_secret_token(raw, self._token_key)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def check_password_policy(self, plaintext: str) -> None:
        """Raise WeakCredential unless plaintext satisfies the enforced rules."""
        if len(plaintext) < self._settings.password_min_length:
            raise WeakCredential(f"Password must be at least {self._settings.password_min_length} characters long.")
        if len(plaintext.encode("utf-8")) > BCRYPT_MAX_BYTES:
            raise WeakCredential(f"Password must be at most {BCRYPT_MAX_BYTES} bytes long.")

    def hash_new_password(self, plaintext: str) -> str:
        """Policy-check and hash a password (used at registration)."""
        self.check_password_policy(plaintext)
        return hash_password(plaintext, self._settings.bcrypt_rounds)

    def set_password(self, user_id: int, plaintext: str, initial: bool = False) -> bool:
        """Replace the password hash for user_id.

        Returns True when the caller must revoke the user's other sessions
        (every change except the initial one).
        """
        password_hash = self.hash_new_password(plaintext)
        self._store.set_password_hash(user_id, password_hash, self._clock())
        # An outstanding reset link must not outlive a password change
        self._store.clear_reset_token(user_id)
        logger.info("Password %s for user_id=%s", "set" if initial else "changed", user_id)
        return not initial

    def verify_password(self, user_id: int | None, plaintext: str) -> bool:
        """Constant-work password check [C1]. False for unknown users and wrong passwords alike."""
        credential = self._store.get_credential(user_id) if user_id is not None else None
        if credential is None or credential.password_hash is None:
            verify_password(plaintext, dummy_hash(self._settings.bcrypt_rounds))
            return False
        return verify_password(plaintext, credential.password_hash)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def issue_verification_token(self, user_id: int) -> str:
        """Create a fresh verification token, invalidating any previous one [C3]."""
        token = generate_token(VERIFICATION_TOKEN_BYTES)
        expires_at = self._clock() + timedelta(hours=self._settings.verification_token_hours)
        self._store.set_verification_token(user_id, self._hash_token(token), expires_at)
        return token

    def consume_verification_token(self, token: str) -> int:
        """Mark the owning user's email verified. Raises InvalidToken if unknown, used, or expired."""
        user_id = self._store.consume_verification_token(self._hash_token(token), self._clock())
        if user_id is None:
            raise InvalidToken("Invalid or expired verification token.")
        return user_id

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def issue_reset_token(
        self,
        user_id: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, datetime]:
        """Create a 512-bit reset token valid for reset_token_minutes [C2][C3]."""
        token = generate_token(RESET_TOKEN_BYTES)
        expires_at = self._clock() + timedelta(minutes=self._settings.reset_token_minutes)
        self._store.set_reset_token(user_id, self._hash_token(token), expires_at, ip_address, user_agent)
        return token, expires_at

    def validate_reset_token(self, token: str) -> bool:
        """Read-only check that a reset token is live (for the "open reset link" page)."""
        credential = self._store.get_credential_by_reset_hash(self._hash_token(token))
        return (
            credential is not None
            and credential.reset_expires_at is not None
            and credential.reset_expires_at > self._clock()
        )

    def consume_reset_token(self, token: str, new_password: str) -> int:
        """Use a reset token to set a new password. Returns the user_id.

        Raises WeakCredential if the new password fails policy (token stays
        live so the user can retry), InvalidToken if the token is unknown,
        expired, or lost a race to a concurrent consumer.
        """
        self.check_password_policy(new_password)
        token_hash = self._hash_token(token)
        credential = self._store.get_credential_by_reset_hash(token_hash)
        now = self._clock()
        if credential is None or credential.reset_expires_at is None or credential.reset_expires_at <= now:
            raise InvalidToken("Invalid or expired reset token.")
        new_hash = hash_password(new_password, self._settings.bcrypt_rounds)
        user_id = self._store.consume_reset_token(token_hash, new_hash, now)
        if user_id is None:
            raise InvalidToken("Invalid or expired reset token.")
        logger.info("Password reset completed for user_id=%s", user_id)
        return user_id


# ---------------------------------------------------------------------------
# Advisory strength estimate
# ---------------------------------------------------------------------------

_COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "123456",
        "12345678",
        "123456789",
        "qwerty",
        "qwerty123",
        "abc123",
        "letmein",
        "welcome",
        "welcome1",
        "monkey",
        "dragon",
        "iloveyou",
        "admin",
        "admin123",
        "football",
        "baseball",
        "sunshine",
        "princess",
        "trustno1",
        "passw0rd",
        "p@ssw0rd",
    }
)

_SEQUENCES = ("abcdefghijklmnopqrstuvwxyz", "0123456789", "qwertyuiop", "asdfghjkl", "zxcvbnm")

_LEVELS = ((80, "very_strong"), (60, "strong"), (40, "fair"), (20, "weak"), (0, "very_weak"))


def _has_sequence(lowered: str, run: int = 4) -> bool:
    for seq in _SEQUENCES:
        for i in range(len(seq) - run + 1):
            chunk = seq[i : i + run]
            if chunk in lowered or chunk[::-1] in lowered:
                return True
    return False


def password_strength(plaintext: str) -> PasswordStrength:
    """Score a password 0-100 with human-readable feedback.

    Combines character-class variety, length, and Shannon entropy, with
    penalties for common passwords, keyboard/alphabet runs and repeats.
    """
    feedback: list[str] = []
    length = len(plaintext)
    if length == 0:
        return PasswordStrength(score=0, level="very_weak", feedback=["Password is empty."], entropy_bits=0.0)

    classes = {
        "lowercase": bool(re.search(r"[a-z]", plaintext)),
        "uppercase": bool(re.search(r"[A-Z]", plaintext)),
        "digit": bool(re.search(r"\d", plaintext)),
        "symbol": bool(re.search(r"[^A-Za-z0-9]", plaintext)),
    }
    for name, present in classes.items():
        if not present:
            feedback.append(f"Add at least one {name} character.")

    counts = Counter(plaintext)
    shannon = -sum((c / length) * math.log2(c / length) for c in counts.values())
    entropy_bits = round(shannon * length, 1)

    score = min(40, length * 3) + 10 * sum(classes.values()) + min(20, int(entropy_bits / 3))
    if length < 12:
        feedback.append("Use 12 or more characters.")

    lowered = plaintext.lower()
    if lowered in _COMMON_PASSWORDS:
        score = min(score, 5)
        feedback.append("This is a commonly used password.")
    if _has_sequence(lowered):
        score -= 15
        feedback.append("Avoid keyboard or alphabet sequences.")
    if re.search(r"(.)\1{2,}", plaintext):
        score -= 10
        feedback.append("Avoid repeating the same character.")

    score = max(0, min(100, score))
    level = next(name for floor, name in _LEVELS if score >= floor)
    return PasswordStrength(score=score, level=level, feedback=feedback, entropy_bits=entropy_bits)
