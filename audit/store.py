"""
audit/store.py -- SQLAlchemy Core persistence for audit log entries.

Pattern: Repository + Data Mapper (same as auth/store.py).

Append-only: the repository exposes insert, read, and retention delete. There
is deliberately no update method -- an entry that changes after insert is by
definition tampered with, and SecurityAuditLog.verify_integrity() will flag it.

Security:
  All queries use bound parameters. Filter columns come from the
  AuditLogFilter dataclass, never from raw request input.

Layer rule: no imports from api/, auth/, or ratelimit/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select, tuple_
from sqlalchemy.engine import Engine

from audit.models import (
    AuditLogEntry,
    AuditLogFilter,
    AuditStats,
    SecurityAction,
    SecurityEventType,
    SecuritySeverity,
    UnreadableAuditEntry,
)
from core.db import make_engine
from core.timeutil import from_iso, to_iso

MAX_PAGE_SIZE = 500

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("event_type", String(20), nullable=False, index=True),
    Column("action", String(40), nullable=False, index=True),
    Column("success", Integer, nullable=False),
    Column("severity", String(10), nullable=False, index=True),
    Column("created_at", String(32), nullable=False, index=True),
    Column("checksum", String(64), nullable=False),
    Column("user_id", Integer, index=True),
    Column("email", String(255), index=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("session_id", Integer),
    Column("request_id", String(64)),
    Column("resource", String(255)),
    Column("event_data", Text, nullable=False, server_default="{}"),  # JSON object
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditStore:
    """Repository for AuditLogEntry records.

    Usage:
        store = AuditStore()
        store.insert(entry)
        items, total = store.query(AuditLogFilter(user_id=7))
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def insert(self, entry: AuditLogEntry) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _audit_logs.insert().values(
                    id=entry.id,
                    event_type=entry.event_type.value,
                    action=entry.action.value,
                    success=1 if entry.success else 0,
                    severity=entry.severity.value,
                    created_at=to_iso(entry.created_at),
                    checksum=entry.checksum,
                    user_id=entry.user_id,
                    email=entry.email,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    session_id=entry.session_id,
                    request_id=entry.request_id,
                    resource=entry.resource,
                    event_data=json.dumps(entry.event_data, sort_keys=True),
                )
            )
            conn.commit()

    def get(self, entry_id: str) -> AuditLogEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def get_many(self, entry_ids: list[str]) -> tuple[list[AuditLogEntry], list[str]]:
        """Return (decoded entries, ids of rows that could not be decoded)."""
        if not entry_ids:
            return [], []
        with self.engine.connect() as conn:
            rows = conn.execute(_audit_logs.select().where(_audit_logs.c.id.in_(entry_ids))).fetchall()
        return _decode_rows(rows)

    def query(self, flt: AuditLogFilter) -> tuple[list[AuditLogEntry], int]:
        """Return (page of entries newest first, total matching count).

        Raises UnreadableAuditEntry if a row on the page no longer decodes.
        """
        clauses = _filter_clauses(flt)
        limit = max(1, min(flt.limit, MAX_PAGE_SIZE))
        offset = max(0, flt.offset)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_logs).where(*clauses)).scalar() or 0
            rows = conn.execute(
                _audit_logs.select()
                .where(*clauses)
                .order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_entry(r) for r in rows], total

    def stats(self, flt: AuditLogFilter) -> AuditStats:
        clauses = _filter_clauses(flt)
        stats = AuditStats()
        with self.engine.connect() as conn:
            for success, count in conn.execute(
                select(_audit_logs.c.success, func.count()).where(*clauses).group_by(_audit_logs.c.success)
            ):
                stats.total += count
                if success:
                    stats.successful += count
                else:
                    stats.failed += count
            for event_type, count in conn.execute(
                select(_audit_logs.c.event_type, func.count()).where(*clauses).group_by(_audit_logs.c.event_type)
            ):
                stats.by_event_type[event_type] = count
            for severity, count in conn.execute(
                select(_audit_logs.c.severity, func.count()).where(*clauses).group_by(_audit_logs.c.severity)
            ):
                stats.by_severity[severity] = count
        return stats

    def iter_batches(self, batch_size: int = 500) -> Iterator[tuple[list[AuditLogEntry], list[str]]]:
        """Yield (entries, unreadable ids) oldest first, batch_size rows at a time (keyset pagination)."""
        last: tuple[str, str] | None = None
        while True:
            stmt = _audit_logs.select().order_by(_audit_logs.c.created_at, _audit_logs.c.id).limit(batch_size)
            if last is not None:
                stmt = stmt.where(tuple_(_audit_logs.c.created_at, _audit_logs.c.id) > tuple_(*last))
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
            if not rows:
                return
            yield _decode_rows(rows)
            last = (rows[-1].created_at, rows[-1].id)

    def count_older_than(self, event_type: SecurityEventType, cutoff: datetime) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count())
                    .select_from(_audit_logs)
                    .where((_audit_logs.c.event_type == event_type.value) & (_audit_logs.c.created_at < to_iso(cutoff)))
                ).scalar()
                or 0
            )

    def delete_older_than(self, event_type: SecurityEventType, cutoff: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.delete().where(
                    (_audit_logs.c.event_type == event_type.value) & (_audit_logs.c.created_at < to_iso(cutoff))
                )
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _filter_clauses(flt: AuditLogFilter) -> list:
    c = _audit_logs.c
    clauses = []
    if flt.user_id is not None:
        clauses.append(c.user_id == flt.user_id)
    if flt.email is not None:
        clauses.append(c.email == flt.email)
    if flt.event_type is not None:
        clauses.append(c.event_type == flt.event_type.value)
    if flt.action is not None:
        clauses.append(c.action == flt.action.value)
    if flt.success is not None:
        clauses.append(c.success == (1 if flt.success else 0))
    if flt.severity is not None:
        clauses.append(c.severity == flt.severity.value)
    if flt.ip_address is not None:
        clauses.append(c.ip_address == flt.ip_address)
    if flt.session_id is not None:
        clauses.append(c.session_id == flt.session_id)
    if flt.request_id is not None:
        clauses.append(c.request_id == flt.request_id)
    if flt.resource is not None:
        clauses.append(c.resource == flt.resource)
    if flt.date_from is not None:
        clauses.append(c.created_at >= to_iso(flt.date_from))
    if flt.date_to is not None:
        clauses.append(c.created_at <= to_iso(flt.date_to))
    return clauses


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditLogEntry:
    """Raises UnreadableAuditEntry when a column no longer decodes."""
    try:
        return _decode(row)
    except (ValueError, TypeError) as exc:
        raise UnreadableAuditEntry(row.id) from exc


def _decode_rows(rows) -> tuple[list[AuditLogEntry], list[str]]:
    entries: list[AuditLogEntry] = []
    unreadable: list[str] = []
    for row in rows:
        try:
            entries.append(_row_to_entry(row))
        except UnreadableAuditEntry as exc:
            unreadable.append(exc.entry_id)
    return entries, unreadable


def _decode(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        event_type=SecurityEventType(row.event_type),
        action=SecurityAction(row.action),
        success=bool(row.success),
        severity=SecuritySeverity(row.severity),
        created_at=from_iso(row.created_at),
        checksum=row.checksum,
        user_id=row.user_id,
        email=row.email,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        session_id=row.session_id,
        request_id=row.request_id,
        resource=row.resource,
        event_data=json.loads(row.event_data or "{}"),
    )
