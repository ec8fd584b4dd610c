"""
auth/errors.py -- Error kinds, component exceptions, and the AuthResult type.

Two error channels, used at different seams:

  Exceptions (WeakCredential, InvalidToken, UserInactive, ...) are raised by
      the component managers. They are programming-level signals between
      layers inside the engine. Storage failures stay SQLAlchemyError until
      the orchestrator turns them into STORAGE_UNAVAILABLE results.

  AuthResult is what the orchestrator returns to callers. Expected failures
      (wrong password, expired token, rate limit) are values, not exceptions,
      each tagged with an ErrorKind and a message that is safe to show users.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")

STORAGE_UNAVAILABLE_MESSAGE = "Service temporarily unavailable. Please try again later."


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    INVALID_TWO_FACTOR_CODE = "invalid_two_factor_code"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    RATE_LIMITED = "rate_limited"
    WEAK_CREDENTIAL = "weak_credential"
    SESSION_INVALID = "session_invalid"
    INTEGRITY_VIOLATION = "integrity_violation"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    PERMISSION_DENIED = "permission_denied"
    INVALID_INPUT = "invalid_input"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AuthError(Exception):
    """Base class for engine exceptions. kind maps onto the caller-facing ErrorKind."""

    kind: ErrorKind = ErrorKind.INVALID_STATE

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.kind.value)
        self.message = message or str(self.args[0])


class WeakCredential(AuthError):
    """Password does not meet the minimum requirements."""

    kind = ErrorKind.WEAK_CREDENTIAL


class InvalidToken(AuthError):
    """Token is unknown, already used, or expired."""

    kind = ErrorKind.INVALID_OR_EXPIRED_TOKEN


class UserInactive(AuthError):
    """User does not exist or has been deactivated."""

    kind = ErrorKind.ACCOUNT_INACTIVE


class InvalidTwoFactorState(AuthError):
    """Two-factor operation is not allowed in the current enrollment state."""

    kind = ErrorKind.INVALID_STATE


class AccountLinkConflict(AuthError):
    """This provider account is already linked to a different user."""

    kind = ErrorKind.ALREADY_EXISTS


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """Discriminated success/failure value returned by AuthOrchestrator.

    Success: ok=True, value holds the payload.
    Failure: ok=False, error + message describe it; retry_after is set for
             RATE_LIMITED; value may still carry a payload for
             TWO_FACTOR_REQUIRED (the pending challenge token).
    """

    ok: bool
    value: T | None = None
    error: ErrorKind | None = None
    message: str = ""
    retry_after: int | None = None

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> AuthResult:
        return cls(ok=True, value=value, message=message)

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        message: str,
        *,
        retry_after: int | None = None,
        value: Any = None,
    ) -> AuthResult:
        return cls(ok=False, value=value, error=error, message=message, retry_after=retry_after)
