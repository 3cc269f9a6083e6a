from typing import List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shardfix.config import WRITE_TIMEOUT_MS
from shardfix.models import Base


def make_engine(url: str, busy_timeout_ms: int = WRITE_TIMEOUT_MS) -> Engine:
    """
    Create an engine for a metadata snapshot.

    SQLite waits at most busy_timeout_ms for a lock before a write fails, which
    bounds every commit the same way the write concern timeout bounds live writes.
    In-memory databases share one connection so all sessions see the same data.
    """
    if not url.startswith("sqlite"):
        return create_engine(url)

    connect_args = {"check_same_thread": False, "timeout": busy_timeout_ms / 1000.0}
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, bind=engine)


def init_db(engine: Engine):
    Base.metadata.create_all(bind=engine)


def sqlite_file(url: str) -> Optional[str]:
    """Path of the database file behind a SQLite URL, None for in-memory or other backends"""
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return None
    if not parsed.database or parsed.database == ":memory:" or parsed.database.startswith("file:"):
        return None
    return parsed.database


def missing_tables(engine: Engine) -> List[str]:
    present = set(inspect(engine).get_table_names())
    return sorted(name for name in Base.metadata.tables if name not in present)
