"""
core/crypto.py -- Token generation, keyed hashing, AEAD, and backoff math.

Every other component builds on these primitives; none of them touch storage.

Security design decisions:
  Tokens: secrets.token_bytes() encoded as URL-safe base64 (no padding).
       Session and verification tokens carry 256 bits, reset tokens 512 bits.

  Token hashing: HMAC-SHA256 with a server-held key. The hash is
       deterministic so stores look tokens up by hash in O(1) through a
       UNIQUE index, and a database dump alone cannot be replayed.

  At-rest secrets: AES-256-GCM (cryptography's AESGCM). A fresh 96-bit
       random nonce is generated per record and stored alongside the
       ciphertext. Associated data binds a ciphertext to its owner so a
       blob copied onto another user's row fails authentication.

  Key derivation: HKDF-SHA256 with a distinct info label per purpose, so
       the token-hash key, the AES key and the audit key never coincide even
       when all three are derived from the same SECRET_KEY.

Layer rule: core/ is the kernel. No imports from api/, auth/, audit/, or
ratelimit/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import random
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

SESSION_TOKEN_BYTES = 32
VERIFICATION_TOKEN_BYTES = 32
RESET_TOKEN_BYTES = 64

_NONCE_SIZE = 12
_BOX_VERSION = "v1"


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def generate_token(num_bytes: int = SESSION_TOKEN_BYTES) -> str:
    """Return a URL-safe random token carrying num_bytes of entropy."""
    return base64.urlsafe_b64encode(secrets.token_bytes(num_bytes)).rstrip(b"=").decode("ascii")


def hash_token(raw: str, key: bytes) -> str:
    """Return HMAC-SHA256(key, raw) as a hex string."""
    return hmac.new(key, raw.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings in constant time. Safe for non-ASCII input."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def derive_key(secret: str | bytes, label: str, length: int = 32) -> bytes:
    """Derive a purpose-specific key from a master secret with HKDF-SHA256."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=None,
        info=f"gatekeeper:{label}".encode("ascii"),
    )
    return hkdf.derive(secret)


# ---------------------------------------------------------------------------
# Authenticated encryption
# ---------------------------------------------------------------------------


class DecryptionError(Exception):
    """Ciphertext failed authentication, was truncated, or has an unknown format."""


class SecretBox:
    """AES-256-GCM wrapper producing self-describing text tokens.

    Output format: "v1.<base64url(nonce || ciphertext || tag)>".

    Usage:
        box = SecretBox(key)
        blob = box.encrypt("JBSWY3DPEHPK3PXP", aad="user:7")
        box.decrypt(blob, aad="user:7")
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValueError("SecretBox requires a 256-bit key")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str, aad: str = "") -> str:
        nonce = secrets.token_bytes(_NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad.encode("utf-8") or None)
        payload = base64.urlsafe_b64encode(nonce + sealed).rstrip(b"=").decode("ascii")
        return f"{_BOX_VERSION}.{payload}"

    def decrypt(self, token: str, aad: str = "") -> str:
        version, _, payload = token.partition(".")
        if version != _BOX_VERSION or not payload:
            raise DecryptionError("unrecognized ciphertext format")
        try:
            data = base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4))
        except (ValueError, TypeError) as exc:
            raise DecryptionError("ciphertext is not valid base64") from exc
        if len(data) <= _NONCE_SIZE:
            raise DecryptionError("ciphertext too short")
        nonce, sealed = data[:_NONCE_SIZE], data[_NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, aad.encode("utf-8") or None)
        except InvalidTag as exc:
            raise DecryptionError("ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def exponential_backoff(
    attempt: int,
    base_delay: float,
    max_delay: float = 60.0,
    jitter: float = 0.2,
    rng: random.Random | None = None,
) -> float:
    """Return the delay in seconds before retry number `attempt`.

    delay = min(max_delay, base_delay * 2 ** (attempt - 1)), scaled by a
    uniform factor in [1 - jitter, 1 + jitter] and capped again at max_delay.
    attempt <= 0 means no failures yet and yields 0.
    """
    if attempt <= 0 or base_delay <= 0:
        return 0.0
    # Bound the exponent so huge attempt counts cannot overflow the float.
    delay = min(max_delay, base_delay * (2 ** min(attempt - 1, 62)))
    if jitter > 0:
        rng = rng or random.Random()
        delay *= rng.uniform(1.0 - jitter, 1.0 + jitter)
    return min(max_delay, max(0.0, delay))


# ---------------------------------------------------------------------------
# Key ring
# ---------------------------------------------------------------------------


class KeyRing:
    """The three server-held keys, derived once from Settings.

    token_key:      HMAC key for session / verification / reset / challenge hashes.
    encryption_key: AES-256-GCM key for TOTP secrets and OAuth tokens at rest.
    audit_key:      HMAC key for audit log checksums.
    """

    def __init__(self, token_key: bytes, encryption_key: bytes, audit_key: bytes) -> None:
        self.token_key = token_key
        self.encryption_key = encryption_key
        self.audit_key = audit_key

    @classmethod
    def from_settings(cls, settings) -> KeyRing:
        if settings.encryption_key:
            encryption_key = bytes.fromhex(settings.encryption_key)
        else:
            encryption_key = derive_key(settings.secret_key, "encryption")
        if settings.audit_hmac_key:
            audit_key = derive_key(settings.audit_hmac_key, "audit")
        else:
            audit_key = derive_key(settings.secret_key, "audit")
        return cls(
            token_key=derive_key(settings.secret_key, "token-hash"),
            encryption_key=encryption_key,
            audit_key=audit_key,
        )

    def secret_box(self) -> SecretBox:
        return SecretBox(self.encryption_key)
