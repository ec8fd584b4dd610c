"""
audit/models.py -- Domain types for the tamper-evident security audit log.

Pattern: Data class (pure data container). The closed EVENT_ACTIONS mapping
is the only logic here: it defines which actions are legal under which event
type, and SecurityAuditLog.append() refuses anything else.

Layer rule: no imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SecurityEventType(str, Enum):
    AUTH = "AUTH"
    USER_MGMT = "USER_MGMT"
    SECURITY = "SECURITY"
    DATA_ACCESS = "DATA_ACCESS"
    SYSTEM = "SYSTEM"


class SecurityAction(str, Enum):
    # Authentication
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_LOCKED = "LOGIN_LOCKED"
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TWO_FACTOR_VERIFIED = "TWO_FACTOR_VERIFIED"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    TWO_FACTOR_SETUP = "TWO_FACTOR_SETUP"
    BACKUP_CODES_GENERATED = "BACKUP_CODES_GENERATED"

    # User management
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"
    USER_ACTIVATED = "USER_ACTIVATED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    EMAIL_VERIFICATION_SENT = "EMAIL_VERIFICATION_SENT"
    EMAIL_VERIFIED = "EMAIL_VERIFIED"
    EMAIL_VERIFICATION_FAILED = "EMAIL_VERIFICATION_FAILED"
    OAUTH_LINKED = "OAUTH_LINKED"
    OAUTH_UNLINKED = "OAUTH_UNLINKED"

    # Security
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"

    # Data access
    DATA_VIEWED = "DATA_VIEWED"
    DATA_EXPORTED = "DATA_EXPORTED"
    DATA_IMPORTED = "DATA_IMPORTED"

    # System
    SYSTEM_CONFIG_CHANGED = "SYSTEM_CONFIG_CHANGED"
    BACKUP_CREATED = "BACKUP_CREATED"
    MAINTENANCE_MODE = "MAINTENANCE_MODE"


class SecuritySeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_A = SecurityAction

EVENT_ACTIONS: dict[SecurityEventType, frozenset[SecurityAction]] = {
    SecurityEventType.AUTH: frozenset(
        {
            _A.LOGIN,
            _A.LOGOUT,
            _A.LOGIN_FAILED,
            _A.LOGIN_LOCKED,
            _A.SESSION_CREATED,
            _A.SESSION_EXPIRED,
            _A.SESSION_TERMINATED,
            _A.PASSWORD_RESET_REQUESTED,
            _A.PASSWORD_RESET_COMPLETED,
            _A.PASSWORD_RESET_FAILED,
            _A.PASSWORD_CHANGED,
            _A.TWO_FACTOR_ENABLED,
            _A.TWO_FACTOR_DISABLED,
            _A.TWO_FACTOR_VERIFIED,
            _A.TWO_FACTOR_FAILED,
            _A.TWO_FACTOR_SETUP,
            _A.BACKUP_CODES_GENERATED,
        }
    ),
    SecurityEventType.USER_MGMT: frozenset(
        {
            _A.USER_CREATED,
            _A.USER_UPDATED,
            _A.USER_DELETED,
            _A.USER_ACTIVATED,
            _A.USER_DEACTIVATED,
            _A.EMAIL_VERIFICATION_SENT,
            _A.EMAIL_VERIFIED,
            _A.EMAIL_VERIFICATION_FAILED,
            _A.OAUTH_LINKED,
            _A.OAUTH_UNLINKED,
        }
    ),
    SecurityEventType.SECURITY: frozenset(
        {
            _A.SUSPICIOUS_ACTIVITY,
            _A.RATE_LIMIT_EXCEEDED,
            _A.UNAUTHORIZED_ACCESS,
            _A.PERMISSION_DENIED,
            _A.INTEGRITY_VIOLATION,
        }
    ),
    SecurityEventType.DATA_ACCESS: frozenset({_A.DATA_VIEWED, _A.DATA_EXPORTED, _A.DATA_IMPORTED}),
    SecurityEventType.SYSTEM: frozenset({_A.SYSTEM_CONFIG_CHANGED, _A.BACKUP_CREATED, _A.MAINTENANCE_MODE}),
}


def is_valid_action(event_type: SecurityEventType, action: SecurityAction) -> bool:
    return action in EVENT_ACTIONS.get(event_type, frozenset())


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AuditEventMismatch(ValueError):
    """An action was logged under an event type that does not allow it."""


class IntegrityViolation(Exception):
    """A stored audit entry no longer matches its checksum."""

    def __init__(self, entry_ids: list[str]) -> None:
        self.entry_ids = entry_ids
        super().__init__(f"Audit log integrity violation: {', '.join(entry_ids[:5])}")


class UnreadableAuditEntry(IntegrityViolation):
    """A stored row can no longer be decoded (unknown enum value, bad JSON, bad timestamp)."""

    def __init__(self, entry_id: str) -> None:
        self.entry_id = entry_id
        super().__init__([entry_id])


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit record.

    checksum is HMAC-SHA256 over every other field (see audit/log.py). The
    dataclass is frozen; the store has no update path either.
    """

    id: str  # uuid4 hex
    event_type: SecurityEventType
    action: SecurityAction
    success: bool
    severity: SecuritySeverity
    created_at: datetime
    checksum: str
    user_id: int | None = None
    email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: int | None = None
    request_id: str | None = None
    resource: str | None = None
    event_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditLogFilter:
    """Query filter. Every field is optional; set fields are ANDed."""

    user_id: int | None = None
    email: str | None = None
    event_type: SecurityEventType | None = None
    action: SecurityAction | None = None
    success: bool | None = None
    severity: SecuritySeverity | None = None
    ip_address: str | None = None
    session_id: int | None = None
    request_id: str | None = None
    resource: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 50
    offset: int = 0


@dataclass
class AuditPage:
    items: list[AuditLogEntry]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass
class AuditStats:
    total: int = 0
    successful: int = 0
    failed: int = 0
    by_event_type: dict[str, int] = field(default_factory=dict)
    by_severity: dict[str, int] = field(default_factory=dict)


@dataclass
class IntegrityReport:
    verified: int = 0
    corrupted: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.corrupted


@dataclass
class RetentionPolicy:
    """Retention in days per event type; anything unlisted uses default_days."""

    default_days: int = 365
    by_event_type: dict[SecurityEventType, int] = field(
        default_factory=lambda: {
            SecurityEventType.AUTH: 180,
            SecurityEventType.USER_MGMT: 365,
            SecurityEventType.SECURITY: 1095,
            SecurityEventType.DATA_ACCESS: 365,
            SecurityEventType.SYSTEM: 365,
        }
    )

    def days_for(self, event_type: SecurityEventType) -> int:
        return self.by_event_type.get(event_type, self.default_days)
