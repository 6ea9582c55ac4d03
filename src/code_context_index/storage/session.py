"""
Database Session Management

Provides the SQLite engine and session factory for the relational store.
Foreign keys are switched on per connection so that deleting a file cascades
to its chunks and embedding rows.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base


def _apply_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute("PRAGMA busy_timeout = 5000")
    finally:
        cursor.close()


def create_sqlite_engine(database_path: str) -> Engine:
    """
    Create an engine for the given SQLite file, creating its directory.

    ":memory:" is accepted for tests.
    """
    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}

    if database_path == ":memory:":
        url = "sqlite://"
        # One shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    else:
        Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{database_path}"

    engine = create_engine(
        url,
        echo=False,  # Set True for SQL debugging
        **kwargs,
    )
    event.listen(engine, "connect", _apply_pragmas)
    return engine


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create the schema if needed and return a session factory."""
    Base.metadata.create_all(engine)
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
    )


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Yield a session wrapped in a transaction.

    Commits on success, rolls back and re-raises on failure.
    """
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
