from __future__ import annotations

from collections.abc import Callable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


SessionFactory = Callable[[], Session]


def build_engine(database_url: str) -> Engine:
    """Create a SQLAlchemy engine for ``database_url``.

    In-memory SQLite URLs get a single shared connection so every session
    sees the same database (used by tests and quick local runs).
    """

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, pool_pre_ping=True)


def create_sqlalchemy_session_factory(engine: Engine) -> SessionFactory:
    """Create a SessionFactory producing SQLAlchemy sessions bound to ``engine``."""

    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=Session)

    def _factory() -> Session:  # pragma: no cover - thin wrapper
        return SessionLocal()

    return _factory
