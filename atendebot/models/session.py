"""Helpers for configuring SQLAlchemy engine and session factories."""

from __future__ import annotations

import os

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from . import Base


def get_engine(database_url: str | None = None, **kwargs: object) -> Engine:
    """Create a SQLAlchemy engine.

    Args:
        database_url: Optional database URL. When ``None`` the ``DATABASE_URL``
            environment variable is used.
        **kwargs: Additional keyword arguments forwarded to
            :func:`sqlalchemy.create_engine`.

    Returns:
        Configured SQLAlchemy :class:`~sqlalchemy.engine.Engine` instance.
    """

    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not configured.")

    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):  # pragma: no cover - dialect hook
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

    return engine


def get_sessionmaker(
    database_url: str | None = None, *, engine: Engine | None = None, **kwargs: object
) -> sessionmaker[Session]:
    """Return a session factory bound to the configured engine."""

    bound = engine or get_engine(database_url=database_url, **kwargs)
    return sessionmaker(bind=bound, expire_on_commit=False, future=True)


def create_schema(engine: Engine) -> None:
    """Create every table known to :class:`Base` that does not exist yet."""

    Base.metadata.create_all(engine)


__all__ = ["Base", "create_schema", "get_engine", "get_sessionmaker"]
