"""Async engine and session helpers for the relational store."""

from __future__ import annotations

import logging

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .errors import StorageFailure
from .models import Base

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(database_url: str, *, echo: bool = False, **engine_kwargs) -> AsyncEngine:
    """Create the async engine, enabling foreign keys on SQLite.

    Extra keyword arguments (e.g. ``poolclass``) are passed to SQLAlchemy.
    """
    engine = create_async_engine(database_url, echo=echo, **engine_kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record) -> None:  # pragma: no cover - driver hook
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Create all tables. Development and test helper; production uses migrations."""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as exc:
        raise StorageFailure(f"Failed to create schema: {exc}") from exc
    logger.info("Schema ready on %s", engine.url.render_as_string(hide_password=True))
