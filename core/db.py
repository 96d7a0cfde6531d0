"""
core/db.py -- SQLAlchemy engine factory shared by every store.

Each repository (auth, workspace, sharing, billing) owns its own tables but
builds its engine here, so the SQLite tweaks are applied in one place.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _is_sqlite_memory(db_url: str) -> bool:
    return ":memory:" in db_url or "mode=memory" in db_url


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite tweaks every store in this project shares.

    check_same_thread=False: FastAPI runs sync handlers in a thread pool, so a
    pooled connection may be used from a thread other than its creator.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and not _is_sqlite_memory(db_url):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
