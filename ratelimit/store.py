"""
ratelimit/store.py -- SQLAlchemy Core persistence for rate-limit counters.

Pattern: Repository + Data Mapper (same as auth/store.py).

Counters live in the shared database rather than process memory so every
application instance enforces the same limit for the same key.

Atomicity:
  Each consume attempt is a single conditional UPDATE whose WHERE clause
  encodes the limit ("count < max_requests AND window_end > now"). The
  database serializes concurrent UPDATEs on the same row, so two racing
  requests can never both take the last slot. rowcount tells the caller
  whether its UPDATE won.

  A fresh key is created with INSERT; a concurrent INSERT of the same key
  raises IntegrityError and the loser simply retries the UPDATE path.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, auth/, or audit/.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, MetaData, String, Table, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.db import make_engine
from core.timeutil import from_iso, to_iso
from ratelimit.models import RateLimitCounter

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_counters = Table(
    "rate_limit_counters",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("count", Integer, nullable=False),
    Column("window_start", String(32), nullable=False),
    Column("window_end", String(32), nullable=False, index=True),
    Column("window_seconds", Integer, nullable=False),
    Column("max_requests", Integer, nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_failures = Table(
    "rate_limit_failures",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("failures", Integer, nullable=False),
    Column("last_failure_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RateLimitStore:
    """Repository for fixed-window counters and consecutive-failure tallies.

    Usage:
        store = RateLimitStore()
        allowed = store.try_consume("login:ip:10.0.0.1", 20, 900, now)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Fixed-window counters
    # ------------------------------------------------------------------

    def try_consume(self, key: str, max_requests: int, window_seconds: int, now: datetime) -> bool:
        """Atomically count one request against key. Returns True if it fit."""
        if max_requests <= 0:
            return False
        now_iso = to_iso(now)
        window_end = to_iso(now + timedelta(seconds=window_seconds))

        for _ in range(3):
            with self.engine.connect() as conn:
                # 1. Live window with room left
                result = conn.execute(
                    _counters.update()
                    .where(
                        (_counters.c.key == key)
                        & (_counters.c.window_end > now_iso)
                        & (_counters.c.count < max_requests)
                    )
                    .values(count=_counters.c.count + 1, updated_at=now_iso)
                )
                if result.rowcount:
                    conn.commit()
                    return True

                # 2. Window elapsed -- restart it with this request as the first
                result = conn.execute(
                    _counters.update()
                    .where((_counters.c.key == key) & (_counters.c.window_end <= now_iso))
                    .values(
                        count=1,
                        window_start=now_iso,
                        window_end=window_end,
                        window_seconds=window_seconds,
                        max_requests=max_requests,
                        updated_at=now_iso,
                    )
                )
                if result.rowcount:
                    conn.commit()
                    return True

                exists = conn.execute(select(_counters.c.key).where(_counters.c.key == key)).first()
                conn.commit()
            if exists is not None:
                return False

            # 3. First request ever for this key
            try:
                with self.engine.connect() as conn:
                    conn.execute(
                        _counters.insert().values(
                            key=key,
                            count=1,
                            window_start=now_iso,
                            window_end=window_end,
                            window_seconds=window_seconds,
                            max_requests=max_requests,
                            updated_at=now_iso,
                        )
                    )
                    conn.commit()
                return True
            except IntegrityError:
                # Another instance inserted the key first; go round again.
                continue
        return False

    def get(self, key: str) -> RateLimitCounter | None:
        with self.engine.connect() as conn:
            row = conn.execute(_counters.select().where(_counters.c.key == key)).fetchone()
            failure = conn.execute(_failures.select().where(_failures.c.key == key)).fetchone()
        if row is None:
            return None
        return _row_to_counter(row, failure)

    def delete(self, key: str) -> None:
        """Remove both the window counter and the failure tally for key."""
        with self.engine.connect() as conn:
            conn.execute(_counters.delete().where(_counters.c.key == key))
            conn.execute(_failures.delete().where(_failures.c.key == key))
            conn.commit()

    # ------------------------------------------------------------------
    # Consecutive failures
    # ------------------------------------------------------------------

    def record_failure(self, key: str, now: datetime) -> int:
        """Increment the failure tally for key and return the new value."""
        now_iso = to_iso(now)
        for _ in range(3):
            with self.engine.connect() as conn:
                result = conn.execute(
                    _failures.update()
                    .where(_failures.c.key == key)
                    .values(failures=_failures.c.failures + 1, last_failure_at=now_iso)
                )
                if result.rowcount:
                    failures = conn.execute(select(_failures.c.failures).where(_failures.c.key == key)).scalar()
                    conn.commit()
                    return int(failures or 1)
            try:
                with self.engine.connect() as conn:
                    conn.execute(_failures.insert().values(key=key, failures=1, last_failure_at=now_iso))
                    conn.commit()
                return 1
            except IntegrityError:
                continue
        return 1

    def get_failures(self, key: str) -> tuple[int, datetime | None]:
        with self.engine.connect() as conn:
            row = conn.execute(_failures.select().where(_failures.c.key == key)).fetchone()
        if row is None:
            return 0, None
        return row.failures, from_iso(row.last_failure_at)

    def clear_failures(self, key: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_failures.delete().where(_failures.c.key == key))
            conn.commit()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_stale(self, now: datetime, failure_ttl_seconds: int = 24 * 3600) -> int:
        """Delete counters whose window ended and failure tallies older than failure_ttl_seconds."""
        now_iso = to_iso(now)
        failure_cutoff = to_iso(now - timedelta(seconds=failure_ttl_seconds))
        with self.engine.connect() as conn:
            counters = conn.execute(_counters.delete().where(_counters.c.window_end <= now_iso))
            failures = conn.execute(_failures.delete().where(_failures.c.last_failure_at < failure_cutoff))
            conn.commit()
        return counters.rowcount + failures.rowcount

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_counter(row, failure=None) -> RateLimitCounter:
    return RateLimitCounter(
        key=row.key,
        count=row.count,
        window_start=from_iso(row.window_start),
        window_seconds=row.window_seconds,
        max_requests=row.max_requests,
        failures=failure.failures if failure is not None else 0,
        last_failure_at=from_iso(failure.last_failure_at) if failure is not None else None,
    )
