"""
auth/service.py -- AuthOrchestrator: the caller-facing authentication API.

Composes the component managers (credentials, two-factor, sessions, rate
limiter, audit log, notifier) into the user-level flows. Every public method
returns an AuthResult; expected failures are values, never exceptions.

Ordering rules, applied to every flow:
  1. Rate-limit gates run before any credential check, so a throttled
     caller learns nothing about the credential.
  2. Each state transition writes exactly one audit entry.
  3. Notifications go out after the transition has committed and can never
     fail it (auth/notifier.py).

Security notes:
  [O1] Login returns the same INVALID_CREDENTIALS result for an unknown email
       and a wrong password. ACCOUNT_INACTIVE / EMAIL_NOT_VERIFIED are only
       revealed after the correct password has been presented.

  [O2] Password reset and verification resend answer with the same message
       whether or not the account exists.

  [O3] Consecutive login and second-factor failures engage exponential
       backoff on the account key. A successful login clears it.

  [O4] Any SQLAlchemyError is logged with its stack trace and surfaced as
       STORAGE_UNAVAILABLE with a generic message.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import math
import random
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from audit.log import SecurityAuditLog
from audit.models import AuditLogFilter, RetentionPolicy, SecurityAction, SecuritySeverity, UnreadableAuditEntry
from audit.store import AuditStore
from auth.credentials import CredentialManager
from auth.errors import (
    STORAGE_UNAVAILABLE_MESSAGE,
    AuthResult,
    ErrorKind,
    InvalidToken,
    InvalidTwoFactorState,
    WeakCredential,
)
from auth.models import User
from auth.notifier import LoggingNotifier, Notifier, notify
from auth.session_store import SessionStore
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import hash_secret_token
from auth.two_factor import TwoFactorManager
from core.config import Settings, get_settings
from core.crypto import SESSION_TOKEN_BYTES, KeyRing, generate_token
from core.timeutil import Clock, utc_now
from ratelimit.limiter import RateLimiter
from ratelimit.store import RateLimitStore

logger = logging.getLogger("gatekeeper.auth.service")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password."
RESET_REQUESTED_MESSAGE = "If an account exists for that email, a password reset link has been sent."
VERIFICATION_SENT_MESSAGE = "If that account needs verification, a new link has been sent."
SESSION_INVALID_MESSAGE = "Session expired or invalid. Please sign in again."
DUPLICATE_EMAIL_MESSAGE = "An account with that email already exists."
AUDIT_INTEGRITY_MESSAGE = "The audit log failed an integrity check. An administrator has been alerted."


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class SessionGrant:
    """Successful login payload. token is the raw session token (shown once)."""

    user: User
    token: str
    session_id: int
    expires_at: datetime


@dataclass(frozen=True)
class MaintenanceReport:
    sessions_removed: int = 0
    challenges_removed: int = 0
    counters_purged: int = 0
    audit_entries_removed: int = 0


def _storage_guarded(func):
    """Turn storage failures into STORAGE_UNAVAILABLE results [O4]."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except SQLAlchemyError:
            logger.exception("Storage failure during %s", func.__name__)
            return AuthResult.failure(ErrorKind.STORAGE_UNAVAILABLE, STORAGE_UNAVAILABLE_MESSAGE)

    return wrapper


class AuthOrchestrator:
    """Entry point for every authentication flow.

    Usage:
        auth = AuthOrchestrator(users, creds, tfa, sessions, limiter, audit)
        result = auth.login("ada@example.com", "Sn0wman!2024", ip_address="203.0.113.9")
        if result.ok:
            token = result.value.token
        elif result.error is ErrorKind.TWO_FACTOR_REQUIRED:
            result = auth.complete_two_factor(result.value, "123456")
    """

    def __init__(
        self,
        users: UserStore,
        credentials: CredentialManager,
        two_factor: TwoFactorManager,
        sessions: SessionManager,
        limiter: RateLimiter,
        audit: SecurityAuditLog,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        token_key: bytes | None = None,
    ) -> None:
        self.users = users
        self.credentials = credentials
        self.two_factor = two_factor
        self.sessions = sessions
        self.limiter = limiter
        self.audit = audit
        self.notifier = notifier or LoggingNotifier()
        self._settings = settings or get_settings()
        self._clock = clock
        self._token_key = token_key

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _gate(
        self,
        checks: list[tuple[str, str | None]],
        operation: str,
        backoff_key: str | None = None,
        **audit_fields,
    ) -> AuthResult | None:
        """Run rate-limit checks in order; return a RATE_LIMITED result or None to proceed."""
        for policy, identifier in checks:
            if not identifier:
                continue
            decision = self.limiter.check_policy(policy, identifier)
            if not decision.allowed:
                self.audit.log_rate_limited(operation, decision.retry_after, **audit_fields)
                return AuthResult.failure(
                    ErrorKind.RATE_LIMITED,
                    "Too many attempts. Please try again later.",
                    retry_after=decision.retry_after,
                )
        if backoff_key:
            delay = self.limiter.failure_delay(backoff_key)
            if delay > 0:
                retry_after = max(1, math.ceil(delay))
                self.audit.log_auth_event(
                    SecurityAction.LOGIN_LOCKED,
                    success=False,
                    event_data={"operation": operation, "retry_after": retry_after},
                    **audit_fields,
                )
                return AuthResult.failure(
                    ErrorKind.RATE_LIMITED,
                    "Too many failed attempts. Please wait before trying again.",
                    retry_after=retry_after,
                )
        return None

    def _gate_token(self, operation: str, ip_address: str | None, **audit_fields) -> AuthResult | None:
        """Gate a reset or verification token submission per client IP, with backoff."""
        return self._gate(
            [("token_ip", ip_address)],
            operation,
            backoff_key=self.limiter.policy_key("token_ip", ip_address) if ip_address else None,
            ip_address=ip_address,
            **audit_fields,
        )

    def _token_failed(self, ip_address: str | None) -> int:
        if not ip_address:
            return 0
        return self.limiter.record_failure(self.limiter.policy_key("token_ip", ip_address))

    def _token_succeeded(self, ip_address: str | None) -> None:
        if ip_address:
            self.limiter.clear_failures(self.limiter.policy_key("token_ip", ip_address))

    def _reauthenticate(
        self,
        ctx,
        password: str,
        operation: str,
        action: SecurityAction,
        message: str,
        ip_address: str | None = None,
    ) -> AuthResult | None:
        """Gate and check a password re-entry inside a session. None means it matched."""
        user_id = ctx.user.id
        key = self.limiter.policy_key("reauth_user", str(user_id))
        limited = self._gate(
            [("reauth_user", str(user_id))],
            operation,
            backoff_key=key,
            user_id=user_id,
            ip_address=ip_address,
            session_id=ctx.session.id,
        )
        if limited:
            return limited
        if not self.credentials.verify_password(user_id, password):
            failures = self.limiter.record_failure(key)
            self.audit.log_auth_event(
                action,
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                session_id=ctx.session.id,
                event_data={"reason": "password_mismatch", "consecutive_failures": failures},
            )
            return AuthResult.failure(ErrorKind.INVALID_CREDENTIALS, message)
        self.limiter.clear_failures(key)
        return None

    def _session_from_token(self, token: str | None):
        return self.sessions.validate(token) if token else None

    def _session_invalid(self) -> AuthResult:
        return AuthResult.failure(ErrorKind.SESSION_INVALID, SESSION_INVALID_MESSAGE)

    def _start_session(self, user: User, ip_address: str | None, user_agent: str | None) -> SessionGrant:
        issued = self.sessions.create(user.id, ip_address=ip_address, user_agent=user_agent)
        self.sessions.enforce_concurrency_limit(user.id)
        self.users.update_last_login(user.id, self._clock())
        self.limiter.clear_failures(self.limiter.policy_key("login_account", user.email))
        return SessionGrant(
            user=user,
            token=issued.token,
            session_id=issued.session.id,
            expires_at=issued.session.expires_at,
        )

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    @_storage_guarded
    def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Create an account. The first account created becomes an admin."""
        if not self._settings.self_registration_enabled:
            return AuthResult.failure(ErrorKind.PERMISSION_DENIED, "Self-registration is disabled.")
        limited = self._gate([("register_ip", ip_address)], "register", ip_address=ip_address)
        if limited:
            return limited

        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            return self._registration_rejected(
                ErrorKind.INVALID_INPUT, "Enter a valid email address.", "invalid_email", None, ip_address, user_agent
            )
        try:
            self.credentials.check_password_policy(password)
        except WeakCredential as exc:
            return self._registration_rejected(
                ErrorKind.WEAK_CREDENTIAL, exc.message, "weak_password", email, ip_address, user_agent
            )
        if self.users.get_by_email(email) is not None:
            return self._registration_rejected(
                ErrorKind.ALREADY_EXISTS, DUPLICATE_EMAIL_MESSAGE, "duplicate_email", email, ip_address, user_agent
            )

        now = self._clock()
        user = User(
            email=email,
            name=name,
            role="admin" if self.users.count_users() == 0 else "user",
            email_verified=not self._settings.require_email_verification,
            created_at=now,
        )
        try:
            user.id = self.users.create_user(user, None, now)
        except IntegrityError:
            # Lost a race with a concurrent registration of the same address
            return self._registration_rejected(
                ErrorKind.ALREADY_EXISTS, DUPLICATE_EMAIL_MESSAGE, "duplicate_email", email, ip_address, user_agent
            )
        self.credentials.set_password(user.id, password, initial=True)

        if self._settings.require_email_verification:
            token = self.credentials.issue_verification_token(user.id)
            notify(self.notifier, "send_verification_email", email, token)

        self.audit.log_user_event(
            SecurityAction.USER_CREATED,
            user_id=user.id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            event_data={"role": user.role},
        )
        logger.info("Registered user_id=%s", user.id)
        return AuthResult.success(user)

    def _registration_rejected(
        self,
        kind: ErrorKind,
        message: str,
        reason: str,
        email: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> AuthResult:
        self.audit.log_user_event(
            SecurityAction.USER_CREATED,
            success=False,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            event_data={"reason": reason},
        )
        return AuthResult.failure(kind, message)

    @_storage_guarded
    def verify_email(self, token: str, ip_address: str | None = None) -> AuthResult:
        limited = self._gate_token("verify_email", ip_address)
        if limited:
            return limited
        try:
            user_id = self.credentials.consume_verification_token(token)
        except InvalidToken as exc:
            failures = self._token_failed(ip_address)
            self.audit.log_user_event(
                SecurityAction.EMAIL_VERIFICATION_FAILED,
                success=False,
                ip_address=ip_address,
                event_data={"reason": "invalid_or_expired_token", "consecutive_failures": failures},
            )
            return AuthResult.failure(ErrorKind.INVALID_OR_EXPIRED_TOKEN, exc.message)
        self._token_succeeded(ip_address)
        self.audit.log_user_event(SecurityAction.EMAIL_VERIFIED, user_id=user_id, ip_address=ip_address)
        return AuthResult.success(user_id, "Email verified.")

    @_storage_guarded
    def resend_verification(self, email: str, ip_address: str | None = None) -> AuthResult:
        """Issue a fresh verification link [O2]."""
        email = normalize_email(email)
        limited = self._gate(
            [("verify_account", email), ("reset_ip", ip_address)],
            "resend_verification",
            email=email,
            ip_address=ip_address,
        )
        if limited:
            return limited
        user = self.users.get_by_email(email)
        if user is not None and user.is_active and not user.email_verified:
            token = self.credentials.issue_verification_token(user.id)
            notify(self.notifier, "send_verification_email", user.email, token)
            self.audit.log_user_event(
                SecurityAction.EMAIL_VERIFICATION_SENT, user_id=user.id, email=user.email, ip_address=ip_address
            )
        return AuthResult.success(message=VERIFICATION_SENT_MESSAGE)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @_storage_guarded
    def login(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Password login [O1][O3].

        Success value: SessionGrant. With 2FA enabled the result is a
        TWO_FACTOR_REQUIRED failure whose value is the pending challenge token.
        """
        email = normalize_email(email)
        account_key = self.limiter.policy_key("login_account", email)
        limited = self._gate(
            [("login_account", email), ("login_ip", ip_address)],
            "login",
            backoff_key=account_key,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if limited:
            return limited

        user = self.users.get_by_email(email)
        if not self.credentials.verify_password(user.id if user else None, password):
            failures = self.limiter.record_failure(account_key)
            self.audit.log_auth_event(
                SecurityAction.LOGIN_FAILED,
                success=False,
                user_id=user.id if user else None,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "invalid_credentials", "consecutive_failures": failures},
            )
            return AuthResult.failure(ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)

        if not user.is_active:
            self.audit.log_auth_event(
                SecurityAction.LOGIN_FAILED,
                success=False,
                user_id=user.id,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "account_inactive"},
            )
            return AuthResult.failure(ErrorKind.ACCOUNT_INACTIVE, "This account has been deactivated.")

        if self._settings.require_email_verification and not user.email_verified:
            self.audit.log_auth_event(
                SecurityAction.LOGIN_FAILED,
                success=False,
                user_id=user.id,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "email_not_verified"},
            )
            return AuthResult.failure(ErrorKind.EMAIL_NOT_VERIFIED, "Please verify your email address first.")

        if self.two_factor.is_enabled(user.id):
            now = self._clock()
            challenge = generate_token(SESSION_TOKEN_BYTES)
            self.users.create_challenge(
                user.id,
                hash_secret_token(challenge, self._token_key),
                now + timedelta(minutes=self._settings.two_factor_challenge_minutes),
                now,
                ip_address,
                user_agent,
            )
            self.limiter.clear_failures(account_key)
            self.audit.log_auth_event(
                SecurityAction.LOGIN,
                user_id=user.id,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"stage": "password", "two_factor_required": True},
            )
            return AuthResult.failure(
                ErrorKind.TWO_FACTOR_REQUIRED,
                "Enter the code from your authenticator app.",
                value=challenge,
            )

        grant = self._start_session(user, ip_address, user_agent)
        self.audit.log_auth_event(
            SecurityAction.LOGIN,
            user_id=user.id,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=grant.session_id,
        )
        return AuthResult.success(grant)

    @_storage_guarded
    def complete_two_factor(
        self,
        challenge_token: str,
        code: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Second login step.

        The challenge is claimed before the code is checked, so two requests
        racing on one challenge cannot both spend a TOTP step or backup code.
        A wrong code puts the challenge back for another try.
        """
        now = self._clock()
        challenge = self.users.get_challenge(hash_secret_token(challenge_token or "", self._token_key), now)
        if challenge is None:
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_FAILED,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "invalid_challenge"},
            )
            return AuthResult.failure(
                ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Sign-in attempt expired. Please sign in again."
            )

        user_id = challenge.user_id
        tfa_key = self.limiter.policy_key("two_factor", str(user_id))
        limited = self._gate(
            [("two_factor", str(user_id))],
            "two_factor",
            backoff_key=tfa_key,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if limited:
            return limited

        if not self.users.consume_challenge(challenge.id, now):
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_FAILED,
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                event_data={"reason": "challenge_already_used"},
            )
            return AuthResult.failure(
                ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Sign-in attempt expired. Please sign in again."
            )

        if not self.two_factor.verify_code(user_id, code or ""):
            self.users.restore_challenge(challenge)
            failures = self.limiter.record_failure(tfa_key)
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_FAILED,
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "invalid_code", "consecutive_failures": failures},
            )
            return AuthResult.failure(ErrorKind.INVALID_TWO_FACTOR_CODE, "Invalid authentication code.")

        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_FAILED,
                success=False,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "account_inactive"},
            )
            return AuthResult.failure(ErrorKind.ACCOUNT_INACTIVE, "This account has been deactivated.")
        self.limiter.clear_failures(tfa_key)
        grant = self._start_session(user, ip_address, user_agent)
        self.audit.log_auth_event(
            SecurityAction.LOGIN,
            user_id=user.id,
            email=user.email,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=grant.session_id,
            event_data={"stage": "two_factor"},
        )
        return AuthResult.success(grant)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_storage_guarded
    def verify_session(self, token: str | None) -> AuthResult:
        """Validate (and possibly refresh) a session token. Value: SessionContext."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        return AuthResult.success(ctx)

    @_storage_guarded
    def logout(self, token: str | None, ip_address: str | None = None) -> AuthResult:
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        self.sessions.revoke(token)
        self.audit.log_auth_event(
            SecurityAction.LOGOUT,
            user_id=ctx.user.id,
            email=ctx.user.email,
            ip_address=ip_address,
            session_id=ctx.session.id,
        )
        return AuthResult.success(message="Logged out.")

    @_storage_guarded
    def logout_all(self, token: str | None, ip_address: str | None = None) -> AuthResult:
        """Revoke every session of the token's owner, including this one. Value: count."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        count = self.sessions.revoke_all(ctx.user.id)
        self.audit.log_auth_event(
            SecurityAction.SESSION_TERMINATED,
            user_id=ctx.user.id,
            ip_address=ip_address,
            session_id=ctx.session.id,
            event_data={"scope": "all", "count": count},
        )
        return AuthResult.success(count, "Logged out of all sessions.")

    @_storage_guarded
    def list_sessions(self, user_id: int, current_token: str | None = None) -> AuthResult:
        return AuthResult.success(self.sessions.list_for_user(user_id, current_token))

    @_storage_guarded
    def revoke_session(self, user_id: int, session_id: int, ip_address: str | None = None) -> AuthResult:
        """Revoke one of user_id's own sessions by id."""
        if not self.sessions.revoke_by_id(session_id, user_id=user_id):
            return AuthResult.failure(ErrorKind.NOT_FOUND, "Session not found.")
        self.audit.log_auth_event(
            SecurityAction.SESSION_TERMINATED,
            user_id=user_id,
            ip_address=ip_address,
            session_id=session_id,
            event_data={"scope": "single"},
        )
        return AuthResult.success(message="Session revoked.")

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @_storage_guarded
    def request_password_reset(
        self,
        email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Send a reset link if the account exists [O2]."""
        email = normalize_email(email)
        limited = self._gate(
            [("reset_account", email), ("reset_ip", ip_address)],
            "password_reset",
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if limited:
            return limited

        user = self.users.get_by_email(email)
        if user is None or not user.is_active:
            # Same work profile as the real path: one token generation, one audit write
            generate_token(SESSION_TOKEN_BYTES)
            self.audit.log_auth_event(
                SecurityAction.PASSWORD_RESET_REQUESTED,
                success=False,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"delivered": False},
            )
            return AuthResult.success(message=RESET_REQUESTED_MESSAGE)

        token, expires_at = self.credentials.issue_reset_token(user.id, ip_address, user_agent)
        notify(self.notifier, "send_password_reset_email", user.email, token)
        self.audit.log_auth_event(
            SecurityAction.PASSWORD_RESET_REQUESTED,
            user_id=user.id,
            email=user.email,
            ip_address=ip_address,
            user_agent=user_agent,
            event_data={"delivered": True, "expires_at": expires_at.isoformat()},
        )
        return AuthResult.success(message=RESET_REQUESTED_MESSAGE)

    @_storage_guarded
    def check_reset_token(self, token: str, ip_address: str | None = None) -> AuthResult:
        """Read-only liveness check for a reset link, before the new password is chosen."""
        limited = self._gate_token("password_reset_validate", ip_address)
        if limited:
            return limited
        if not self.credentials.validate_reset_token(token):
            failures = self._token_failed(ip_address)
            self.audit.log_auth_event(
                SecurityAction.PASSWORD_RESET_FAILED,
                success=False,
                ip_address=ip_address,
                event_data={
                    "reason": "invalid_or_expired_token",
                    "stage": "validate",
                    "consecutive_failures": failures,
                },
            )
            return AuthResult.failure(ErrorKind.INVALID_OR_EXPIRED_TOKEN, "Invalid or expired reset token.")
        return AuthResult.success(message="Reset link is valid.")

    @_storage_guarded
    def reset_password(
        self,
        token: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Consume a reset token, set the new password and revoke every session."""
        limited = self._gate_token("password_reset_confirm", ip_address, user_agent=user_agent)
        if limited:
            return limited
        try:
            user_id = self.credentials.consume_reset_token(token, new_password)
        except WeakCredential as exc:
            self.audit.log_auth_event(
                SecurityAction.PASSWORD_RESET_FAILED,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "weak_password"},
            )
            return AuthResult.failure(ErrorKind.WEAK_CREDENTIAL, exc.message)
        except InvalidToken as exc:
            failures = self._token_failed(ip_address)
            self.audit.log_auth_event(
                SecurityAction.PASSWORD_RESET_FAILED,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                event_data={"reason": "invalid_or_expired_token", "consecutive_failures": failures},
            )
            return AuthResult.failure(ErrorKind.INVALID_OR_EXPIRED_TOKEN, exc.message)

        self._token_succeeded(ip_address)
        revoked = self.sessions.revoke_all(user_id)
        self.users.delete_challenges_for_user(user_id)
        user = self.users.get_by_id(user_id)
        if user is not None:
            self.limiter.clear_failures(self.limiter.policy_key("login_account", user.email))
            notify(self.notifier, "send_password_change_confirmation", user.email)
        self.audit.log_auth_event(
            SecurityAction.PASSWORD_RESET_COMPLETED,
            user_id=user_id,
            email=user.email if user else None,
            ip_address=ip_address,
            user_agent=user_agent,
            event_data={"sessions_revoked": revoked},
        )
        return AuthResult.success(user_id, "Password has been reset. Please sign in.")

    @_storage_guarded
    def change_password(
        self,
        token: str | None,
        current_password: str,
        new_password: str,
        ip_address: str | None = None,
    ) -> AuthResult:
        """Change the password of the session's user; other sessions are revoked."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        user = ctx.user
        mismatch = self._reauthenticate(
            ctx,
            current_password,
            "change_password",
            SecurityAction.PASSWORD_CHANGED,
            "Current password is incorrect.",
            ip_address=ip_address,
        )
        if mismatch:
            return mismatch
        try:
            revoke_others = self.credentials.set_password(user.id, new_password)
        except WeakCredential as exc:
            self.audit.log_auth_event(
                SecurityAction.PASSWORD_CHANGED,
                success=False,
                user_id=user.id,
                ip_address=ip_address,
                session_id=ctx.session.id,
                event_data={"reason": "weak_password"},
            )
            return AuthResult.failure(ErrorKind.WEAK_CREDENTIAL, exc.message)

        revoked = self.sessions.revoke_all(user.id, except_token=token) if revoke_others else 0
        notify(self.notifier, "send_password_change_confirmation", user.email)
        self.audit.log_auth_event(
            SecurityAction.PASSWORD_CHANGED,
            user_id=user.id,
            ip_address=ip_address,
            session_id=ctx.session.id,
            event_data={"sessions_revoked": revoked},
        )
        return AuthResult.success(revoked, "Password changed.")

    # ------------------------------------------------------------------
    # Two-factor management
    # ------------------------------------------------------------------

    @_storage_guarded
    def setup_two_factor(self, token: str | None) -> AuthResult:
        """Start enrollment. Value: EnrollmentSetup (secret, otpauth URI, backup codes)."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        try:
            setup = self.two_factor.begin_enrollment(ctx.user.id, ctx.user.email)
        except InvalidTwoFactorState as exc:
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_SETUP,
                success=False,
                user_id=ctx.user.id,
                session_id=ctx.session.id,
                event_data={"reason": "already_enabled"},
            )
            return AuthResult.failure(ErrorKind.INVALID_STATE, exc.message)
        self.audit.log_auth_event(
            SecurityAction.TWO_FACTOR_SETUP, user_id=ctx.user.id, session_id=ctx.session.id
        )
        return AuthResult.success(setup)

    @_storage_guarded
    def confirm_two_factor(self, token: str | None, code: str) -> AuthResult:
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        user_id = ctx.user.id
        limited = self._gate([("two_factor", str(user_id))], "two_factor_confirm", user_id=user_id)
        if limited:
            return limited
        if not self.two_factor.confirm_enrollment(user_id, code or ""):
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_FAILED,
                success=False,
                user_id=user_id,
                session_id=ctx.session.id,
                event_data={"stage": "enrollment"},
            )
            return AuthResult.failure(ErrorKind.INVALID_TWO_FACTOR_CODE, "Invalid authentication code.")
        self.audit.log_auth_event(SecurityAction.TWO_FACTOR_ENABLED, user_id=user_id, session_id=ctx.session.id)
        return AuthResult.success(message="Two-factor authentication enabled.")

    @_storage_guarded
    def disable_two_factor(self, token: str | None, password: str) -> AuthResult:
        """Disable 2FA. Requires the account password again."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        user_id = ctx.user.id
        mismatch = self._reauthenticate(
            ctx, password, "two_factor_disable", SecurityAction.TWO_FACTOR_DISABLED, "Password is incorrect."
        )
        if mismatch:
            return mismatch
        if not self.two_factor.disable(user_id):
            self.audit.log_auth_event(
                SecurityAction.TWO_FACTOR_DISABLED,
                success=False,
                user_id=user_id,
                session_id=ctx.session.id,
                event_data={"reason": "not_enabled"},
            )
            return AuthResult.failure(ErrorKind.INVALID_STATE, "Two-factor authentication is not enabled.")
        self.users.delete_challenges_for_user(user_id)
        self.audit.log_auth_event(
            SecurityAction.TWO_FACTOR_DISABLED,
            severity=SecuritySeverity.WARN,
            user_id=user_id,
            session_id=ctx.session.id,
        )
        return AuthResult.success(message="Two-factor authentication disabled.")

    @_storage_guarded
    def regenerate_backup_codes(self, token: str | None, password: str) -> AuthResult:
        """Replace all backup codes. Value: the new plaintext codes (shown once)."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        user_id = ctx.user.id
        mismatch = self._reauthenticate(
            ctx, password, "backup_codes_regenerate", SecurityAction.BACKUP_CODES_GENERATED, "Password is incorrect."
        )
        if mismatch:
            return mismatch
        try:
            codes = self.two_factor.regenerate_backup_codes(user_id)
        except InvalidTwoFactorState as exc:
            self.audit.log_auth_event(
                SecurityAction.BACKUP_CODES_GENERATED,
                success=False,
                user_id=user_id,
                session_id=ctx.session.id,
                event_data={"reason": "not_enabled"},
            )
            return AuthResult.failure(ErrorKind.INVALID_STATE, exc.message)
        self.audit.log_auth_event(
            SecurityAction.BACKUP_CODES_GENERATED,
            user_id=user_id,
            session_id=ctx.session.id,
            event_data={"count": len(codes)},
        )
        return AuthResult.success(codes)

    # ------------------------------------------------------------------
    # Audit access and administration
    # ------------------------------------------------------------------

    @_storage_guarded
    def query_audit_log(self, token: str | None, flt: AuditLogFilter | None = None) -> AuthResult:
        """Admins see every entry; other users only entries about themselves."""
        ctx = self._session_from_token(token)
        if ctx is None:
            return self._session_invalid()
        flt = flt or AuditLogFilter()
        if not ctx.user.is_admin:
            flt = replace(flt, user_id=ctx.user.id)
        try:
            page = self.audit.query(flt)
        except UnreadableAuditEntry as exc:
            logger.critical("Audit entry %s no longer decodes; refusing to serve the page", exc.entry_id)
            self.audit.log_security_event(
                SecurityAction.INTEGRITY_VIOLATION,
                severity=SecuritySeverity.CRITICAL,
                user_id=ctx.user.id,
                session_id=ctx.session.id,
                event_data={"corrupted_ids": exc.entry_ids, "operation": "query"},
            )
            return AuthResult.failure(ErrorKind.INTEGRITY_VIOLATION, AUDIT_INTEGRITY_MESSAGE)
        return AuthResult.success(page)

    @_storage_guarded
    def deactivate_user(self, user_id: int, actor_id: int | None = None) -> AuthResult:
        """Deactivate user_id and revoke all of their sessions. Value: sessions revoked."""
        target = self.users.get_by_id(user_id)
        if target is None:
            return AuthResult.failure(ErrorKind.NOT_FOUND, "User not found.")
        if actor_id is not None and actor_id == user_id:
            return AuthResult.failure(ErrorKind.PERMISSION_DENIED, "You cannot deactivate your own account.")
        if target.is_admin and target.is_active and self.users.count_active_admins() <= 1:
            return AuthResult.failure(ErrorKind.INVALID_STATE, "Cannot deactivate the last active admin account.")
        self.users.update_user(user_id, is_active=False)
        revoked = self.sessions.revoke_all(user_id)
        self.users.delete_challenges_for_user(user_id)
        self.audit.log_user_event(
            SecurityAction.USER_DEACTIVATED,
            user_id=user_id,
            email=target.email,
            event_data={"actor_id": actor_id, "sessions_revoked": revoked},
        )
        return AuthResult.success(revoked, "User deactivated.")

    @_storage_guarded
    def activate_user(self, user_id: int, actor_id: int | None = None) -> AuthResult:
        if not self.users.update_user(user_id, is_active=True):
            return AuthResult.failure(ErrorKind.NOT_FOUND, "User not found.")
        self.audit.log_user_event(
            SecurityAction.USER_ACTIVATED, user_id=user_id, event_data={"actor_id": actor_id}
        )
        return AuthResult.success(message="User activated.")

    @_storage_guarded
    def set_role(self, user_id: int, role: str, actor_id: int | None = None) -> AuthResult:
        """Change a user's role. The last active admin cannot be demoted."""
        if role not in ("admin", "user"):
            return AuthResult.failure(ErrorKind.INVALID_INPUT, "Role must be 'admin' or 'user'.")
        target = self.users.get_by_id(user_id)
        if target is None:
            return AuthResult.failure(ErrorKind.NOT_FOUND, "User not found.")
        if target.is_admin and role != "admin" and target.is_active and self.users.count_active_admins() <= 1:
            return AuthResult.failure(ErrorKind.INVALID_STATE, "Cannot demote the last active admin account.")
        self.users.update_user(user_id, role=role)
        self.audit.log_user_event(
            SecurityAction.USER_UPDATED,
            user_id=user_id,
            event_data={"actor_id": actor_id, "role": role, "previous_role": target.role},
        )
        return AuthResult.success(message="Role updated.")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def run_maintenance(self) -> MaintenanceReport:
        """Sweep expired sessions and challenges, stale counters, and aged audit entries.

        Storage errors propagate; the caller (CLI or background loop) logs them.
        """
        report = MaintenanceReport(
            sessions_removed=self.sessions.sweep_expired(),
            challenges_removed=self.users.purge_expired_challenges(self._clock()),
            counters_purged=self.limiter.purge_stale(),
            audit_entries_removed=self.audit.cleanup_expired(),
        )
        logger.info(
            "Maintenance: sessions=%d challenges=%d counters=%d audit=%d",
            report.sessions_removed,
            report.challenges_removed,
            report.counters_purged,
            report.audit_entries_removed,
        )
        return report

    def close(self) -> None:
        self.users.close()
        self.sessions.close()
        self.limiter.close()
        self.audit.close()


def create_orchestrator(
    settings: Settings | None = None,
    db_url: str | None = None,
    clock: Clock = utc_now,
    notifier: Notifier | None = None,
    rng: random.Random | None = None,
) -> AuthOrchestrator:
    """Wire every store and manager against one database.

    All stores share db_url, so every process pointed at the same database
    shares sessions, rate-limit counters and the audit log.
    """
    settings = settings or get_settings()
    db_url = db_url or settings.database_url or None
    keyring = KeyRing.from_settings(settings)
    box = keyring.secret_box()
    users = UserStore(db_url=db_url)
    audit = SecurityAuditLog(
        AuditStore(db_url=db_url),
        key=keyring.audit_key,
        clock=clock,
        retention=RetentionPolicy(default_days=settings.audit_default_retention_days),
    )
    return AuthOrchestrator(
        users=users,
        credentials=CredentialManager(users, settings, clock, token_key=keyring.token_key),
        two_factor=TwoFactorManager(users, settings, clock, box=box, token_key=keyring.token_key),
        sessions=SessionManager(SessionStore(db_url=db_url), users, settings, clock, token_key=keyring.token_key),
        limiter=RateLimiter(RateLimitStore(db_url=db_url), settings, clock, rng=rng),
        audit=audit,
        notifier=notifier,
        settings=settings,
        clock=clock,
        token_key=keyring.token_key,
    )
