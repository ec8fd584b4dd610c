"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and managers
do the work; these only own the shape.

Composition: an account is a User plus optional satellite records joined by
user_id -- Credential (password + verification/reset tokens),
TwoFactorEnrollment, LinkedAccount rows, and Session rows. No record carries
another component's secrets.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass
class User:
    """An identity. email is stored lower-cased and is unique."""

    email: str
    name: str | None = None
    role: str = "user"  # "admin" or "user"
    id: int | None = None
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime | None = None
    last_login: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class Credential:
    """Password material and single-use tokens for one user.

    Invariant: reset_token_hash is set if and only if reset_expires_at is set
    (both are written and cleared by the same UPDATE).
    """

    user_id: int
    password_hash: str | None = None  # None = OAuth-only user
    verification_token_hash: str | None = None
    verification_expires_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_expires_at: datetime | None = None
    reset_requested_ip: str | None = None
    reset_requested_ua: str | None = None
    password_changed_at: datetime | None = None


class TwoFactorState(str, Enum):
    UNENROLLED = "unenrolled"
    PENDING = "pending"
    ENABLED = "enabled"


@dataclass
class TwoFactorEnrollment:
    """Stored 2FA material. secret_encrypted is an AES-GCM blob (never plaintext)."""

    user_id: int
    state: TwoFactorState
    secret_encrypted: str
    backup_salt: str  # hex, per-user HMAC salt for backup code hashes
    backup_code_hashes: list[str] = field(default_factory=list)
    last_used_step: int | None = None  # highest TOTP time step accepted so far
    enabled_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class EnrollmentSetup:
    """Returned once by begin_enrollment(); the only time plaintext leaves the engine."""

    secret: str  # base32, for manual entry
    provisioning_uri: str  # otpauth:// URI for the QR code
    backup_codes: list[str]


@dataclass(frozen=True)
class TwoFactorStatus:
    state: TwoFactorState
    backup_codes_remaining: int = 0

    @property
    def enabled(self) -> bool:
        return self.state is TwoFactorState.ENABLED


@dataclass
class TwoFactorChallenge:
    """Pending second-factor login step issued after a correct password."""

    id: int
    user_id: int
    token_hash: str
    expires_at: datetime
    created_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class Session:
    """A server-side session. Only the HMAC of the token is stored.

    lifetime_seconds is the original (expires_at - created_at) span. It stays
    fixed across refreshes so the 25% refresh threshold does not drift.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    lifetime_seconds: int
    id: int | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session together with its raw token (shown once)."""

    session: Session
    token: str


@dataclass(frozen=True)
class SessionContext:
    """What a successful validate() yields to callers."""

    session: Session
    user: User
    refreshed: bool = False


@dataclass(frozen=True)
class SessionInfo:
    """Session listing row safe to show the owner -- no token material."""

    id: int
    ip_address: str | None
    user_agent: str | None
    device: str
    created_at: datetime
    expires_at: datetime
    is_current: bool


@dataclass
class LinkedAccount:
    """An external OAuth identity linked to a local user.

    Tokens are AES-GCM blobs bound (associated data) to "user_id:provider".
    """

    user_id: int
    provider: str
    provider_account_id: str
    id: int | None = None
    email: str | None = None
    access_token_encrypted: str | None = None
    refresh_token_encrypted: str | None = None
    token_expires_at: datetime | None = None
    scope: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class PasswordStrength:
    """Advisory strength estimate; only the length rule is enforced."""

    score: int  # 0-100
    level: str  # "very_weak" .. "very_strong"
    feedback: list[str]
    entropy_bits: float


@dataclass(frozen=True)
class OAuthIdentity:
    """Verified identity extracted from a provider's token response."""

    provider: str
    subject: str  # provider's stable account id
    email: str
