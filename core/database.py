"""
core/database.py -- SQLAlchemy engine factory shared by every store.

SQLite (default, single instance):
  check_same_thread=False because FastAPI runs sync handlers in a thread pool.
  `timeout` is the busy timeout, so a writer holding the lock fails the
  request after db_timeout_seconds instead of hanging it.
  WAL journal mode lets readers proceed during writes.

PostgreSQL (multi-instance):
  connect_timeout bounds connection setup; statement_timeout bounds every
  query server-side. Requires the psycopg driver (postgres extra).

Layer rule: core/ is the kernel. No imports from api/, auth/, audit/, or cache/.
"""

from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. PRAGMAs are per-connection, so set on every connect."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def is_sqlite(db_url: str) -> bool:
    return db_url.startswith("sqlite")


def create_store_engine(db_url: str, timeout_seconds: int = 10) -> Engine:
    """Build an Engine with bounded timeouts for the given database URL."""
    connect_args: dict = {}
    if is_sqlite(db_url):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    elif db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = timeout_seconds
        connect_args["options"] = f"-c statement_timeout={timeout_seconds * 1000}"

    engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
    if is_sqlite(db_url):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
