"""
DocLock Database Session Management.

``init_vault_db`` is the single entry point for engine setup (CLI, runtime,
tests). Stores receive the returned sessionmaker and open short
transactions through ``session_scope``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from doclock.db.base import Base, engine_registry

VAULT_ENGINE = "vault"


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def init_vault_db(
    db_url: str,
    create_tables: bool = False,
    echo: bool = False,
    **pool_options,
) -> sessionmaker:
    """
    Register the "vault" engine and return a sessionmaker for it.

    1. Registers the engine in the global EngineRegistry.
    2. On SQLite, turns on foreign key enforcement and registers a
       Unicode-aware ``casefold()`` SQL function for every connection.
    3. Optionally runs Base.metadata.create_all() (``doclock init``, tests).
    """
    # Model classes must be imported before create_all
    import doclock.db.models  # noqa: F401

    engine = engine_registry.register(VAULT_ENGINE, db_url, echo=echo, **pool_options)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_conn, connection_record):
            dbapi_conn.create_function("casefold", 1, _casefold, deterministic=True)
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    if create_tables:
        Base.metadata.create_all(engine)

    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(factory) -> Generator[Session, None, None]:
    """
    Transaction scope: commit on success, rollback on any exception.

    Usage:
        with session_scope(self._db_session_factory) as session:
            session.add(folder)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def close_all_sessions() -> None:
    """Dispose all engines. Used during shutdown."""
    engine_registry.dispose()
