"""
auth/two_factor.py -- TOTP enrollment, verification, and backup codes.

State machine per user:
    UNENROLLED --begin_enrollment--> PENDING --confirm_enrollment--> ENABLED
    ENABLED --disable--> UNENROLLED
Restarting enrollment while PENDING replaces the pending secret; while
ENABLED it is refused.

Security notes:
  [T1] TOTP secrets are 160-bit (pyotp.random_base32) and stored AES-GCM
       encrypted with the user id as associated data.

  [T2] Codes are checked for the current 30 s step and +/- valid_window
       steps. The matched step is recorded with a conditional UPDATE
       (last_used_step < step), so a code -- or any code from an earlier
       step -- cannot be replayed once accepted.

  [T3] Backup codes: 10 x 8 characters from an unambiguous alphabet
       (no 0/O/1/I). Stored as HMAC-SHA256(token_key, salt:code) with a
       per-user random salt. Input is normalized (case, whitespace, hyphens)
       and removal is a compare-and-swap on the stored list so two racing
       requests cannot both spend the same code.

  Secrets and codes are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta

import pyotp

from auth.errors import InvalidTwoFactorState
from auth.models import EnrollmentSetup, TwoFactorState, TwoFactorStatus
from auth.store import UserStore
from auth.tokens import get_keyring, hash_secret_token
from core.config import Settings, get_settings
from core.crypto import DecryptionError, SecretBox, constant_time_equals
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatekeeper.auth.two_factor")

BACKUP_CODE_LENGTH = 8
_BACKUP_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_TOTP_DIGITS = 6
_TOTP_INTERVAL = 30


def generate_backup_code() -> str:
    return "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))


def normalize_code(code: str) -> str:
    """Strip whitespace and hyphens and upper-case, so "ab3d-7f9k " == "AB3D7F9K"."""
    return "".join(ch for ch in code if not ch.isspace() and ch != "-").upper()


class TwoFactorManager:
    """Per-user TOTP + backup code lifecycle.

    Usage:
        tfa = TwoFactorManager(user_store)
        setup = tfa.begin_enrollment(user_id, "ada@example.com")
        tfa.confirm_enrollment(user_id, code_from_app)
        tfa.verify_code(user_id, code_from_app)
    """

    def __init__(
        self,
        store: UserStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        box: SecretBox | None = None,
        token_key: bytes | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._box = box or get_keyring().secret_box()
        self._token_key = token_key if token_key is not None else get_keyring().token_key

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _hash_backup_code(self, salt: str, normalized: str) -> str:
        return hash_secret_token(f"{salt}:{normalized}", self._token_key)

    def _new_backup_codes(self) -> tuple[list[str], str, list[str]]:
        codes = [generate_backup_code() for _ in range(self._settings.backup_code_count)]
        salt = secrets.token_hex(16)
        return codes, salt, [self._hash_backup_code(salt, c) for c in codes]

    def _secret_for(self, user_id: int, secret_encrypted: str) -> str | None:
        try:
            return self._box.decrypt(secret_encrypted, aad=f"user:{user_id}")
        except DecryptionError:
            logger.error("TOTP secret for user_id=%s failed to decrypt; treating as verification failure", user_id)
            return None

    def _match_step(self, secret: str, code: str) -> int | None:
        """Return the time step code belongs to within the drift window, or None."""
        code = "".join(code.split())
        if len(code) != _TOTP_DIGITS or not code.isdigit():
            return None
        totp = pyotp.TOTP(secret, digits=_TOTP_DIGITS, interval=_TOTP_INTERVAL)
        now = self._clock()
        window = self._settings.totp_valid_window
        for offset in range(-window, window + 1):
            moment = now + timedelta(seconds=offset * _TOTP_INTERVAL)
            if constant_time_equals(totp.at(moment), code):
                return totp.timecode(moment)
        return None

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def begin_enrollment(self, user_id: int, account_name: str) -> EnrollmentSetup:
        """Generate a secret and backup codes in PENDING state.

        Raises InvalidTwoFactorState if 2FA is already ENABLED.
        """
        secret = pyotp.random_base32()
        codes, salt, hashes = self._new_backup_codes()
        encrypted = self._box.encrypt(secret, aad=f"user:{user_id}")
        if not self._store.save_pending_two_factor(user_id, encrypted, salt, hashes, self._clock()):
            raise InvalidTwoFactorState("Two-factor authentication is already enabled.")
        uri = pyotp.TOTP(secret, digits=_TOTP_DIGITS, interval=_TOTP_INTERVAL).provisioning_uri(
            name=account_name, issuer_name=self._settings.totp_issuer
        )
        logger.info("2FA enrollment started for user_id=%s", user_id)
        return EnrollmentSetup(secret=secret, provisioning_uri=uri, backup_codes=codes)

    def confirm_enrollment(self, user_id: int, code: str) -> bool:
        """PENDING -> ENABLED if code is valid. A wrong code leaves the state unchanged."""
        enrollment = self._store.get_two_factor(user_id)
        if enrollment is None or enrollment.state is not TwoFactorState.PENDING:
            return False
        secret = self._secret_for(user_id, enrollment.secret_encrypted)
        if secret is None:
            return False
        step = self._match_step(secret, code)
        if step is None:
            return False
        enabled = self._store.enable_two_factor(user_id, step, self._clock())
        if enabled:
            logger.info("2FA enabled for user_id=%s", user_id)
        return enabled

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_code(self, user_id: int, code: str) -> bool:
        """Accept a current TOTP code (once) or an unused backup code (once)."""
        enrollment = self._store.get_two_factor(user_id)
        if enrollment is None or enrollment.state is not TwoFactorState.ENABLED:
            return False

        secret = self._secret_for(user_id, enrollment.secret_encrypted)
        if secret is not None:
            step = self._match_step(secret, code)
            if step is not None:
                if self._store.record_totp_step(user_id, step):
                    return True
                logger.warning("Replayed TOTP code rejected for user_id=%s", user_id)
                return False

        return self._consume_backup_code(user_id, code)

    def _consume_backup_code(self, user_id: int, code: str) -> bool:
        normalized = normalize_code(code)
        if len(normalized) != BACKUP_CODE_LENGTH:
            return False
        for _ in range(3):
            enrollment = self._store.get_two_factor(user_id)
            if enrollment is None or enrollment.state is not TwoFactorState.ENABLED:
                return False
            candidate = self._hash_backup_code(enrollment.backup_salt, normalized)
            match = next((h for h in enrollment.backup_code_hashes if constant_time_equals(h, candidate)), None)
            if match is None:
                return False
            remaining = [h for h in enrollment.backup_code_hashes if h != match]
            if self._store.swap_backup_codes(user_id, enrollment.backup_code_hashes, remaining):
                logger.info("Backup code used for user_id=%s (%d remaining)", user_id, len(remaining))
                return True
            # List changed underneath us (another code spent); re-read and retry
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def disable(self, user_id: int) -> bool:
        """Delete the secret and backup codes. Returns False if nothing was enrolled."""
        removed = self._store.delete_two_factor(user_id)
        if removed:
            logger.info("2FA disabled for user_id=%s", user_id)
        return removed

    def regenerate_backup_codes(self, user_id: int) -> list[str]:
        """Replace all backup codes. Raises InvalidTwoFactorState unless ENABLED."""
        codes, salt, hashes = self._new_backup_codes()
        if not self._store.replace_backup_codes(user_id, salt, hashes):
            raise InvalidTwoFactorState("Two-factor authentication is not enabled.")
        return codes

    def status(self, user_id: int) -> TwoFactorStatus:
        enrollment = self._store.get_two_factor(user_id)
        if enrollment is None:
            return TwoFactorStatus(state=TwoFactorState.UNENROLLED)
        return TwoFactorStatus(
            state=enrollment.state,
            backup_codes_remaining=len(enrollment.backup_code_hashes)
            if enrollment.state is TwoFactorState.ENABLED
            else 0,
        )

    def is_enabled(self, user_id: int) -> bool:
        return self.status(user_id).enabled
