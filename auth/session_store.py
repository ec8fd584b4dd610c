"""
auth/session_store.py -- SQLAlchemy Core persistence for server-side sessions.

Pattern: Repository + Data Mapper (same as auth/store.py).

Race rules encoded in SQL:
  refresh: UPDATE ... WHERE id = :id AND is_active = 1 AND expires_at = :old
      A concurrent revoke (is_active -> 0) or a concurrent refresh (new
      expires_at) makes the WHERE fail, so revoke always wins and two
      refreshers cannot double-extend.
  revoke:  UPDATE ... SET is_active = 0 -- idempotent, never resurrects.

Only HMAC hashes of session tokens are stored (UNIQUE index, O(1) lookup).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import Session
from core.db import make_engine
from core.timeutil import from_iso, to_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False, index=True),
    Column("lifetime_seconds", Integer, nullable=False),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session records.

    Usage:
        store = SessionStore()
        sid = store.create(session, now)
        session = store.get_by_token_hash(token_hash)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def create(self, session: Session, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token_hash=session.token_hash,
                    expires_at=to_iso(session.expires_at),
                    lifetime_seconds=session.lifetime_seconds,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    is_active=1,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return result.inserted_primary_key[0]

    def get_by_token_hash(self, token_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_id(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: int, now: datetime) -> list[Session]:
        """Active, unexpired sessions for user_id, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.expires_at > to_iso(now))
                )
                .order_by(_sessions.c.created_at, _sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def extend(self, session_id: int, old_expires_at: datetime, new_expires_at: datetime, now: datetime) -> bool:
        """Compare-and-set expires_at. False if revoked or already refreshed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.expires_at == to_iso(old_expires_at))
                )
                .values(expires_at=to_iso(new_expires_at), updated_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate(self, session_id: int, now: datetime, user_id: int | None = None) -> bool:
        """Revoke one session. user_id, when given, must own it (IDOR guard)."""
        where = (_sessions.c.id == session_id) & (_sessions.c.is_active == 1)
        if user_id is not None:
            where = where & (_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(where).values(is_active=0, updated_at=to_iso(now)))
            conn.commit()
        return result.rowcount > 0

    def deactivate_by_token_hash(self, token_hash: str, now: datetime) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & (_sessions.c.is_active == 1))
                .values(is_active=0, updated_at=to_iso(now))
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_all(self, user_id: int, now: datetime, except_session_id: int | None = None) -> int:
        where = (_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1)
        if except_session_id is not None:
            where = where & (_sessions.c.id != except_session_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(where).values(is_active=0, updated_at=to_iso(now)))
            conn.commit()
        return result.rowcount

    def delete_expired(self, cutoff: datetime) -> int:
        """Delete sessions that expired before cutoff, and revoked ones last touched before it."""
        cutoff_iso = to_iso(cutoff)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where(
                    (_sessions.c.expires_at < cutoff_iso)
                    | ((_sessions.c.is_active == 0) & (_sessions.c.updated_at < cutoff_iso))
                )
            )
            conn.commit()
        return result.rowcount

    def stats(self, now: datetime) -> dict[str, int]:
        now_iso = to_iso(now)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_sessions)).scalar() or 0
            active = (
                conn.execute(
                    select(func.count())
                    .select_from(_sessions)
                    .where((_sessions.c.is_active == 1) & (_sessions.c.expires_at > now_iso))
                ).scalar()
                or 0
            )
            expired = (
                conn.execute(
                    select(func.count())
                    .select_from(_sessions)
                    .where((_sessions.c.is_active == 1) & (_sessions.c.expires_at <= now_iso))
                ).scalar()
                or 0
            )
        return {"total": total, "active": active, "expired": expired, "inactive": total - active - expired}

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        lifetime_seconds=row.lifetime_seconds,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
