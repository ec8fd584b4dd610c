"""
auth/store.py -- SQLAlchemy Core persistence layer for account entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; the _row_to_* functions are the mappers.
Managers and routes never touch SQL directly.

Tables (joined by user_id, one concern each):
  users                  -- identity and status
  credentials            -- password hash, verification + reset token hashes
  two_factor             -- encrypted TOTP secret, backup code hashes, replay step
  two_factor_challenges  -- pending second-factor login steps
  linked_accounts        -- OAuth identities with encrypted provider tokens

Atomic single-use semantics:
  Every "consume" is one conditional UPDATE/DELETE whose WHERE clause repeats
  the validity condition (token hash still present, not expired, state still
  as expected). Of two concurrent consumers exactly one sees rowcount == 1.
  Backup codes use compare-and-swap on the serialized code list for the same
  reason.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Raw tokens never reach this module -- only their HMAC hashes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import Credential, LinkedAccount, TwoFactorChallenge, TwoFactorEnrollment, TwoFactorState, User
from core.db import make_engine
from core.timeutil import from_iso, to_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255)),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_credentials = Table(
    "credentials",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("verification_token_hash", String(64), unique=True),
    Column("verification_expires_at", String(32)),
    Column("reset_token_hash", String(64), unique=True),
    Column("reset_expires_at", String(32)),
    Column("reset_requested_ip", String(45)),
    Column("reset_requested_ua", Text),
    Column("password_changed_at", String(32)),
)

_two_factor = Table(
    "two_factor",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("state", String(12), nullable=False),  # "pending" | "enabled"
    Column("secret_encrypted", Text, nullable=False),  # AES-GCM blob
    Column("backup_salt", String(64), nullable=False),
    Column("backup_codes", Text, nullable=False, server_default="[]"),  # JSON list of HMAC hex
    Column("last_used_step", Integer),
    Column("enabled_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_challenges = Table(
    "two_factor_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
)

_linked_accounts = Table(
    "linked_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", String(255), nullable=False),
    Column("email", String(255)),
    Column("access_token_encrypted", Text),
    Column("refresh_token_encrypted", Text),
    Column("token_expires_at", String(32)),
    Column("scope", Text),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_linked_provider_account"),
    UniqueConstraint("user_id", "provider", name="uq_linked_user_provider"),
)


def _iso_or_none(dt: datetime | None) -> str | None:
    return to_iso(dt) if dt is not None else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users and their credential, 2FA, and OAuth records.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="ada@example.com"), password_hash=h, now=now)
        user = store.get_by_email("ada@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, password_hash: str | None, now: datetime) -> int:
        """Insert a user and its credentials row in one transaction.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    name=user.name,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    email_verified=1 if user.email_verified else 0,
                    created_at=to_iso(now),
                )
            )
            user_id = result.inserted_primary_key[0]
            conn.execute(
                _credentials.insert().values(
                    user_id=user_id,
                    password_hash=password_hash,
                    password_changed_at=to_iso(now) if password_hash else None,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by normalized (lower-cased) email."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def count_active_admins(self) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count())
                    .select_from(_users)
                    .where(_users.c.role == "admin", _users.c.is_active == 1)
                ).scalar()
                or 0
            )

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable user fields: name, role, is_active, email_verified.

        Booleans are converted to 0/1. Returns False if user_id was not found.
        """
        allowed = {"name", "role", "is_active", "email_verified"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("is_active", "email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if not fields:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int, now: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=to_iso(now)))
            conn.commit()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def get_credential(self, user_id: int) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_credentials.select().where(_credentials.c.user_id == user_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def set_password_hash(self, user_id: int, password_hash: str, now: datetime) -> None:
        with self.engine.connect() as conn:
            result = conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(password_hash=password_hash, password_changed_at=to_iso(now))
            )
            if not result.rowcount:
                conn.execute(
                    _credentials.insert().values(
                        user_id=user_id, password_hash=password_hash, password_changed_at=to_iso(now)
                    )
                )
            conn.commit()

    def set_verification_token(self, user_id: int, token_hash: str, expires_at: datetime) -> None:
        """Store a verification token hash, replacing any previous one."""
        with self.engine.connect() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(verification_token_hash=token_hash, verification_expires_at=to_iso(expires_at))
            )
            conn.commit()

    def consume_verification_token(self, token_hash: str, now: datetime) -> int | None:
        """Clear a live verification token and mark the email verified.

        Returns the user_id, or None if the token is unknown, used, or expired.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_credentials.c.user_id).where(
                    (_credentials.c.verification_token_hash == token_hash)
                    & (_credentials.c.verification_expires_at > to_iso(now))
                )
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _credentials.update()
                .where(
                    (_credentials.c.user_id == row.user_id)
                    & (_credentials.c.verification_token_hash == token_hash)
                    & (_credentials.c.verification_expires_at > to_iso(now))
                )
                .values(verification_token_hash=None, verification_expires_at=None)
            )
            if not result.rowcount:
                conn.rollback()
                return None
            conn.execute(_users.update().where(_users.c.id == row.user_id).values(email_verified=1))
            conn.commit()
        return row.user_id

    def set_reset_token(
        self,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Store a reset token hash and its expiry together, replacing any previous one."""
        with self.engine.connect() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(
                    reset_token_hash=token_hash,
                    reset_expires_at=to_iso(expires_at),
                    reset_requested_ip=ip_address,
                    reset_requested_ua=user_agent,
                )
            )
            conn.commit()

    def get_credential_by_reset_hash(self, token_hash: str) -> Credential | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(_credentials.c.reset_token_hash == token_hash)
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def consume_reset_token(self, token_hash: str, new_password_hash: str, now: datetime) -> int | None:
        """Atomically clear a live reset token and install the new password hash.

        Returns the user_id on success, None if another request already used
        the token or it has expired.
        """
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_credentials.c.user_id).where(_credentials.c.reset_token_hash == token_hash)
            ).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _credentials.update()
                .where(
                    (_credentials.c.user_id == row.user_id)
                    & (_credentials.c.reset_token_hash == token_hash)
                    & (_credentials.c.reset_expires_at > now_iso)
                )
                .values(
                    password_hash=new_password_hash,
                    password_changed_at=now_iso,
                    reset_token_hash=None,
                    reset_expires_at=None,
                    reset_requested_ip=None,
                    reset_requested_ua=None,
                )
            )
            conn.commit()
        return row.user_id if result.rowcount else None

    def clear_reset_token(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _credentials.update()
                .where(_credentials.c.user_id == user_id)
                .values(reset_token_hash=None, reset_expires_at=None, reset_requested_ip=None, reset_requested_ua=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Two-factor enrollment
    # ------------------------------------------------------------------

    def get_two_factor(self, user_id: int) -> TwoFactorEnrollment | None:
        with self.engine.connect() as conn:
            row = conn.execute(_two_factor.select().where(_two_factor.c.user_id == user_id)).fetchone()
        return _row_to_two_factor(row) if row is not None else None

    def save_pending_two_factor(
        self,
        user_id: int,
        secret_encrypted: str,
        backup_salt: str,
        backup_code_hashes: list[str],
        now: datetime,
    ) -> bool:
        """Create or replace a PENDING enrollment. Returns False if one is already ENABLED."""
        values = dict(
            state=TwoFactorState.PENDING.value,
            secret_encrypted=secret_encrypted,
            backup_salt=backup_salt,
            backup_codes=json.dumps(backup_code_hashes),
            last_used_step=None,
            enabled_at=None,
            created_at=to_iso(now),
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where((_two_factor.c.user_id == user_id) & (_two_factor.c.state == TwoFactorState.PENDING.value))
                .values(**values)
            )
            if result.rowcount:
                conn.commit()
                return True
            conn.commit()
        try:
            with self.engine.connect() as conn:
                conn.execute(_two_factor.insert().values(user_id=user_id, **values))
                conn.commit()
        except IntegrityError:
            return False
        return True

    def enable_two_factor(self, user_id: int, step: int, now: datetime) -> bool:
        """PENDING -> ENABLED, recording the confirming time step. Loses to a replay of an older step."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where(
                    (_two_factor.c.user_id == user_id)
                    & (_two_factor.c.state == TwoFactorState.PENDING.value)
                    & ((_two_factor.c.last_used_step.is_(None)) | (_two_factor.c.last_used_step < step))
                )
                .values(state=TwoFactorState.ENABLED.value, last_used_step=step, enabled_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def record_totp_step(self, user_id: int, step: int) -> bool:
        """Advance last_used_step to step. False if step (or a later one) was already used."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where(
                    (_two_factor.c.user_id == user_id)
                    & (_two_factor.c.state == TwoFactorState.ENABLED.value)
                    & ((_two_factor.c.last_used_step.is_(None)) | (_two_factor.c.last_used_step < step))
                )
                .values(last_used_step=step)
            )
            conn.commit()
        return result.rowcount > 0

    def swap_backup_codes(self, user_id: int, expected: list[str], remaining: list[str]) -> bool:
        """Compare-and-swap the backup code list. False if it changed underneath us."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where(
                    (_two_factor.c.user_id == user_id)
                    & (_two_factor.c.state == TwoFactorState.ENABLED.value)
                    & (_two_factor.c.backup_codes == json.dumps(expected))
                )
                .values(backup_codes=json.dumps(remaining))
            )
            conn.commit()
        return result.rowcount > 0

    def replace_backup_codes(self, user_id: int, backup_salt: str, backup_code_hashes: list[str]) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor.update()
                .where((_two_factor.c.user_id == user_id) & (_two_factor.c.state == TwoFactorState.ENABLED.value))
                .values(backup_salt=backup_salt, backup_codes=json.dumps(backup_code_hashes))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_two_factor(self, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_two_factor.delete().where(_two_factor.c.user_id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Pending 2FA login challenges
    # ------------------------------------------------------------------

    def create_challenge(
        self,
        user_id: int,
        token_hash: str,
        expires_at: datetime,
        now: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=to_iso(expires_at),
                    created_at=to_iso(now),
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            conn.commit()
        return result.inserted_primary_key[0]

    def get_challenge(self, token_hash: str, now: datetime) -> TwoFactorChallenge | None:
        """Return the live (unexpired) challenge for token_hash, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _challenges.select().where(
                    (_challenges.c.token_hash == token_hash) & (_challenges.c.expires_at > to_iso(now))
                )
            ).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def consume_challenge(self, challenge_id: int, now: datetime) -> bool:
        """Delete a live challenge. Exactly one concurrent caller gets True."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.id == challenge_id) & (_challenges.c.expires_at > to_iso(now))
                )
            )
            conn.commit()
        return result.rowcount > 0

    def restore_challenge(self, challenge: TwoFactorChallenge) -> None:
        """Put a consumed challenge back unchanged (same id, hash and expiry)."""
        with self.engine.connect() as conn:
            conn.execute(
                _challenges.insert().values(
                    id=challenge.id,
                    user_id=challenge.user_id,
                    token_hash=challenge.token_hash,
                    expires_at=to_iso(challenge.expires_at),
                    created_at=to_iso(challenge.created_at),
                    ip_address=challenge.ip_address,
                    user_agent=challenge.user_agent,
                )
            )
            conn.commit()

    def delete_challenges_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_challenges.delete().where(_challenges.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def purge_expired_challenges(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_challenges.delete().where(_challenges.c.expires_at <= to_iso(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Linked OAuth accounts
    # ------------------------------------------------------------------

    def create_linked_account(self, account: LinkedAccount, now: datetime) -> int:
        """Insert a link. Raises IntegrityError if the provider account is already linked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _linked_accounts.insert().values(
                    user_id=account.user_id,
                    provider=account.provider,
                    provider_account_id=account.provider_account_id,
                    email=account.email,
                    access_token_encrypted=account.access_token_encrypted,
                    refresh_token_encrypted=account.refresh_token_encrypted,
                    token_expires_at=_iso_or_none(account.token_expires_at),
                    scope=account.scope,
                    created_at=to_iso(now),
                )
            )
            conn.commit()
        return result.inserted_primary_key[0]

    def get_linked_account(self, provider: str, provider_account_id: str) -> LinkedAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _linked_accounts.select().where(
                    (_linked_accounts.c.provider == provider)
                    & (_linked_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_linked_account(row) if row is not None else None

    def get_linked_account_for_user(self, user_id: int, provider: str) -> LinkedAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _linked_accounts.select().where(
                    (_linked_accounts.c.user_id == user_id) & (_linked_accounts.c.provider == provider)
                )
            ).fetchone()
        return _row_to_linked_account(row) if row is not None else None

    def list_linked_accounts(self, user_id: int) -> list[LinkedAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _linked_accounts.select()
                .where(_linked_accounts.c.user_id == user_id)
                .order_by(_linked_accounts.c.provider)
            ).fetchall()
        return [_row_to_linked_account(r) for r in rows]

    def update_linked_tokens(
        self,
        account_id: int,
        access_token_encrypted: str | None,
        refresh_token_encrypted: str | None,
        token_expires_at: datetime | None,
        scope: str | None,
    ) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _linked_accounts.update()
                .where(_linked_accounts.c.id == account_id)
                .values(
                    access_token_encrypted=access_token_encrypted,
                    refresh_token_encrypted=refresh_token_encrypted,
                    token_expires_at=_iso_or_none(token_expires_at),
                    scope=scope,
                )
            )
            conn.commit()

    def delete_linked_account(self, user_id: int, provider: str) -> bool:
        """Unlink provider from user_id. user_id in the WHERE clause is the IDOR guard."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _linked_accounts.delete().where(
                    (_linked_accounts.c.user_id == user_id) & (_linked_accounts.c.provider == provider)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _parse(value: str | None) -> datetime | None:
    return from_iso(value) if value else None


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        role=row.role,
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        created_at=_parse(row.created_at),
        last_login=_parse(row.last_login),
    )


def _row_to_credential(row) -> Credential:
    return Credential(
        user_id=row.user_id,
        password_hash=row.password_hash,
        verification_token_hash=row.verification_token_hash,
        verification_expires_at=_parse(row.verification_expires_at),
        reset_token_hash=row.reset_token_hash,
        reset_expires_at=_parse(row.reset_expires_at),
        reset_requested_ip=row.reset_requested_ip,
        reset_requested_ua=row.reset_requested_ua,
        password_changed_at=_parse(row.password_changed_at),
    )


def _row_to_two_factor(row) -> TwoFactorEnrollment:
    return TwoFactorEnrollment(
        user_id=row.user_id,
        state=TwoFactorState(row.state),
        secret_encrypted=row.secret_encrypted,
        backup_salt=row.backup_salt,
        backup_code_hashes=json.loads(row.backup_codes or "[]"),
        last_used_step=row.last_used_step,
        enabled_at=_parse(row.enabled_at),
        created_at=_parse(row.created_at),
    )


def _row_to_challenge(row) -> TwoFactorChallenge:
    return TwoFactorChallenge(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _row_to_linked_account(row) -> LinkedAccount:
    return LinkedAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        email=row.email,
        access_token_encrypted=row.access_token_encrypted,
        refresh_token_encrypted=row.refresh_token_encrypted,
        token_expires_at=_parse(row.token_expires_at),
        scope=row.scope,
        created_at=_parse(row.created_at),
    )
