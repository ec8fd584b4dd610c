"""
auth/sessions.py -- Session Manager: issue, validate, refresh, revoke, sweep.

Security notes:
  [S1] Session tokens carry 256 bits and are stored only as HMAC hashes. The
       raw token is returned once from create() and never persisted.

  [S2] Sliding refresh: when validate() sees that no more than
       session_refresh_threshold (25%) of the original lifetime remains, it
       extends expires_at by the original lifetime. The UPDATE is guarded on
       (is_active = 1 AND expires_at = old value), so a concurrent revoke
       always wins and expiry never moves backwards.

  [S3] A session whose owner has been deactivated is revoked on sight.

  [S4] revoke_by_id() accepts an owner user_id that the store puts in the
       WHERE clause, so one user cannot revoke another's session by id.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import UserInactive
from auth.models import IssuedSession, Session, SessionContext, SessionInfo
from auth.session_store import SessionStore
from auth.store import UserStore
from auth.tokens import hash_secret_token
from core.config import Settings, get_settings
from core.crypto import SESSION_TOKEN_BYTES, generate_token
from core.timeutil import Clock, utc_now

logger = logging.getLogger("gatekeeper.auth.sessions")


def describe_user_agent(user_agent: str | None) -> str:
    """Best-effort "Browser on OS" label for session listings."""
    if not user_agent:
        return "Unknown device"
    ua = user_agent.lower()
    if "edg/" in ua:
        browser = "Edge"
    elif "firefox/" in ua:
        browser = "Firefox"
    elif "chrome/" in ua or "crios/" in ua:
        browser = "Chrome"
    elif "safari/" in ua:
        browser = "Safari"
    elif "curl/" in ua or "python" in ua or "httpx" in ua:
        browser = "API client"
    else:
        browser = "Browser"
    if "iphone" in ua or "ipad" in ua:
        os_name = "iOS"
    elif "android" in ua:
        os_name = "Android"
    elif "windows" in ua:
        os_name = "Windows"
    elif "mac os" in ua or "macintosh" in ua:
        os_name = "macOS"
    elif "linux" in ua:
        os_name = "Linux"
    else:
        return browser
    return f"{browser} on {os_name}"


class SessionManager:
    """Server-side session lifecycle.

    Usage:
        sessions = SessionManager(session_store, user_store)
        issued = sessions.create(user_id, ip_address="203.0.113.9")
        ctx = sessions.validate(issued.token)
        sessions.revoke(issued.token)
    """

    def __init__(
        self,
        store: SessionStore,
        users: UserStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        token_key: bytes | None = None,
    ) -> None:
        self._store = store
        self._users = users
        self._settings = settings or get_settings()
        self._clock = clock
        self._token_key = token_key

    def _hash(self, token: str) -> str:
        return hash_secret_token(token, self._token_key)

    # ------------------------------------------------------------------
    # Issue / validate
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: int,
        lifetime_hours: float | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedSession:
        """Issue a new session for an active user. Raises UserInactive otherwise."""
        user = self._users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise UserInactive("User not found or inactive.")
        hours = lifetime_hours if lifetime_hours is not None else self._settings.session_lifetime_hours
        lifetime_seconds = int(hours * 3600)
        now = self._clock()
        token = generate_token(SESSION_TOKEN_BYTES)
        session = Session(
            user_id=user_id,
            token_hash=self._hash(token),
            expires_at=now + timedelta(seconds=lifetime_seconds),
            lifetime_seconds=lifetime_seconds,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )
        session.id = self._store.create(session, now)
        logger.info("Session %s created for user_id=%s", session.id, user_id)
        return IssuedSession(session=session, token=token)

    def validate(self, token: str) -> SessionContext | None:
        """Return the live session and its user, refreshing it if near expiry [S2].

        None for unknown, revoked, or expired tokens, and for inactive users [S3].
        """
        if not token:
            return None
        session = self._store.get_by_token_hash(self._hash(token))
        if session is None or not session.is_active:
            return None
        now = self._clock()
        if session.is_expired(now):
            return None

        user = self._users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            self._store.deactivate(session.id, now)
            logger.info("Session %s revoked: owner user_id=%s inactive", session.id, session.user_id)
            return None

        remaining = (session.expires_at - now).total_seconds()
        if remaining <= session.lifetime_seconds * self._settings.session_refresh_threshold:
            new_expiry = session.expires_at + timedelta(seconds=session.lifetime_seconds)
            if self._store.extend(session.id, session.expires_at, new_expiry, now):
                session.expires_at = new_expiry
                session.updated_at = now
                return SessionContext(session=session, user=user, refreshed=True)
            # Lost the race: revoked (return None) or refreshed by a sibling request
            current = self._store.get_by_id(session.id)
            if current is None or not current.is_active or current.is_expired(now):
                return None
            return SessionContext(session=current, user=user, refreshed=False)
        return SessionContext(session=session, user=user)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> bool:
        """Revoke by raw token. Idempotent; False if nothing was active."""
        return self._store.deactivate_by_token_hash(self._hash(token), self._clock())

    def revoke_by_id(self, session_id: int, user_id: int | None = None) -> bool:
        """Revoke by id; with user_id the session must belong to that user [S4]."""
        return self._store.deactivate(session_id, self._clock(), user_id=user_id)

    def revoke_all(self, user_id: int, except_token: str | None = None) -> int:
        """Revoke every active session of user_id, optionally sparing one. Returns the count."""
        except_id = None
        if except_token:
            keep = self._store.get_by_token_hash(self._hash(except_token))
            if keep is not None and keep.user_id == user_id:
                except_id = keep.id
        count = self._store.deactivate_all(user_id, self._clock(), except_session_id=except_id)
        if count:
            logger.info("Revoked %d session(s) for user_id=%s", count, user_id)
        return count

    def enforce_concurrency_limit(self, user_id: int, max_sessions: int | None = None) -> int:
        """Revoke the oldest active sessions until at most max_sessions remain."""
        limit = max_sessions if max_sessions is not None else self._settings.max_sessions_per_user
        now = self._clock()
        active = self._store.list_active(user_id, now)
        excess = len(active) - max(limit, 0)
        revoked = 0
        for session in active[: max(excess, 0)]:
            if self._store.deactivate(session.id, now):
                revoked += 1
        if revoked:
            logger.info("Concurrency limit: revoked %d oldest session(s) for user_id=%s", revoked, user_id)
        return revoked

    # ------------------------------------------------------------------
    # Listing / maintenance
    # ------------------------------------------------------------------

    def list_for_user(self, user_id: int, current_token: str | None = None) -> list[SessionInfo]:
        current_hash = self._hash(current_token) if current_token else None
        return [
            SessionInfo(
                id=s.id,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                device=describe_user_agent(s.user_agent),
                created_at=s.created_at,
                expires_at=s.expires_at,
                is_current=current_hash is not None and s.token_hash == current_hash,
            )
            for s in reversed(self._store.list_active(user_id, self._clock()))
        ]

    def sweep_expired(self, grace: timedelta | None = None) -> int:
        """Delete sessions expired (or revoked) longer ago than grace. Returns rows removed."""
        if grace is None:
            grace = timedelta(hours=self._settings.session_sweep_grace_hours)
        removed = self._store.delete_expired(self._clock() - grace)
        if removed:
            logger.info("Session sweep removed %d row(s)", removed)
        return removed

    def stats(self) -> dict[str, int]:
        return self._store.stats(self._clock())

    def close(self) -> None:
        self._store.close()
