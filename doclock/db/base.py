"""
DocLock Database Base — SQLAlchemy declarative base, mixins, engine registry.

Provides:
- Base: declarative base for all vault models
- TimestampMixin: created_at, updated_at
- new_id(): opaque string identifiers for user-visible entities
- decrement_counter(): clamped SQL decrement for usage counters
- utcnow() / as_utc(): timezone handling (SQLite returns naive datetimes)
- EngineRegistry: named engines and their health checks
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, case, create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger("doclock.db.base")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all DocLock models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid.uuid4().hex


def decrement_counter(column, amount: int):
    """``column - amount`` clamped at zero, evaluated in SQL."""
    return case((column >= amount, column - amount), else_=0)


class TimestampMixin:
    """Adds created_at and updated_at columns."""
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class EngineRegistry:
    """
    Registry of named SQLAlchemy engines.

    Usage:
        registry = EngineRegistry()
        engine = registry.register("vault", "postgresql://...")
        registry.health_check("vault")
    """

    def __init__(self):
        self._engines: Dict[str, Engine] = {}

    def register(
        self,
        name: str,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: int = 30,
        pool_recycle: int = 1800,
        pool_pre_ping: bool = True,
        **kwargs: Any,
    ) -> Engine:
        """Register (or replace) a named engine."""
        if url.startswith("sqlite"):
            # SQLite uses a single-file pool; sizing arguments do not apply
            kwargs.setdefault("connect_args", {"check_same_thread": False})
        else:
            kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_recycle=pool_recycle,
                pool_pre_ping=pool_pre_ping,
            )
        if name in self._engines:
            self._engines[name].dispose()
        engine = create_engine(url, **kwargs)
        self._engines[name] = engine
        return engine

    def get(self, name: str) -> Engine:
        if name not in self._engines:
            raise KeyError(f"Engine '{name}' not registered. Available: {list(self._engines.keys())}")
        return self._engines[name]

    def dispose(self) -> None:
        """Dispose every engine (close connection pools)."""
        for engine in self._engines.values():
            engine.dispose()

    def health_check(self, name: str) -> bool:
        """True if the engine can run a trivial query."""
        try:
            with self.get(name).connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning(f"Health check for engine '{name}' failed: {e}")
            return False


engine_registry = EngineRegistry()
