"""
API request and response models for the Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
Secrets (password hashes, token hashes, encrypted blobs) have no field here,
so they cannot leak through a response by accident.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from audit.models import AuditLogEntry
from auth.models import LinkedAccount, PasswordStrength, SessionInfo, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    password: str = Field(min_length=1, max_length=256)
    name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class TwoFactorLoginRequest(BaseModel):
    """Second login step: the challenge token from /auth/login plus a TOTP or backup code."""

    challenge_token: str = Field(min_length=1, max_length=256)
    code: str = Field(min_length=1, max_length=32)


class EmailRequest(BaseModel):
    """Body for password reset requests and verification resends."""

    email: str = Field(min_length=1, max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class TokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=256)


class CodeRequest(BaseModel):
    code: str = Field(min_length=1, max_length=32)


class PasswordConfirmRequest(BaseModel):
    """Re-authentication for sensitive account changes."""

    password: str = Field(min_length=1, max_length=256)


class PasswordStrengthRequest(BaseModel):
    password: str = Field(max_length=256)


class UserPatch(BaseModel):
    """PATCH body for admin user updates. At least one field must be set."""

    role: Optional[str] = Field(default=None, pattern=r"^(admin|user)$")
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str]
    role: str
    is_active: bool
    email_verified: bool
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            is_active=user.is_active,
            email_verified=user.email_verified,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class LoginResponse(BaseModel):
    """Response for POST /auth/login and /auth/login/2fa.

    When two_factor_required is true, no session exists yet: token is None and
    challenge_token must be sent to /auth/login/2fa with a code.
    """

    model_config = ConfigDict(frozen=True)

    two_factor_required: bool = False
    token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    challenge_token: Optional[str] = None
    user: Optional[UserResponse] = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    device: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    expires_at: datetime
    is_current: bool

    @classmethod
    def from_info(cls, info: SessionInfo) -> "SessionResponse":
        return cls(
            id=info.id,
            device=info.device,
            ip_address=info.ip_address,
            user_agent=info.user_agent,
            created_at=info.created_at,
            expires_at=info.expires_at,
            is_current=info.is_current,
        )


class CountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    count: int


class PasswordStrengthResponse(BaseModel):
    """Advisory only. Registration and resets enforce the length policy, not this score."""

    model_config = ConfigDict(frozen=True)

    score: int
    level: str
    feedback: list[str]
    entropy_bits: float

    @classmethod
    def from_strength(cls, strength: PasswordStrength) -> "PasswordStrengthResponse":
        return cls(
            score=strength.score,
            level=strength.level,
            feedback=list(strength.feedback),
            entropy_bits=strength.entropy_bits,
        )


class TwoFactorSetupResponse(BaseModel):
    """Returned once by POST /account/2fa/setup. Plaintext is never retrievable again."""

    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


class TwoFactorStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: str
    enabled: bool
    backup_codes_remaining: int


class BackupCodesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    backup_codes: list[str]


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class LinkedAccountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    provider_account_id: str
    email: Optional[str]
    scope: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_account(cls, account: LinkedAccount) -> "LinkedAccountResponse":
        return cls(
            provider=account.provider,
            provider_account_id=account.provider_account_id,
            email=account.email,
            scope=account.scope,
            created_at=account.created_at,
        )


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    event_type: str
    action: str
    success: bool
    severity: str
    created_at: datetime
    user_id: Optional[int]
    email: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    session_id: Optional[int]
    resource: Optional[str]
    event_data: dict

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            event_type=entry.event_type.value,
            action=entry.action.value,
            success=entry.success,
            severity=entry.severity.value,
            created_at=entry.created_at,
            user_id=entry.user_id,
            email=entry.email,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            session_id=entry.session_id,
            resource=entry.resource,
            event_data=entry.event_data,
        )


class AuditPageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[AuditEntryResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class IntegrityCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    verified: int
