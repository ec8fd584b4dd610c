"""
core/db.py -- SQLAlchemy engine factory shared by every repository.

All stores (users, sessions, audit, rate-limit counters) live in the same
database by default so a multi-instance deployment only has to point
DATABASE_URL at one shared server for counters and challenges to be shared.

SQLite specifics:
  check_same_thread=False because FastAPI runs sync handlers in a threadpool.
  WAL journal mode and foreign key enforcement are set per connection
  (PRAGMAs are not inherited by pooled connections). Without foreign_keys=ON
  SQLite ignores the ON DELETE CASCADE clauses in auth/store.py.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatekeeper.db'}"


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def make_engine(db_url: str | None = None) -> Engine:
    """Create an Engine for db_url (or the default SQLite file)."""
    db_url = db_url or DEFAULT_DB_URL
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine
