"""Session store engine.

The store is a single SQLite file written concurrently by the event listener,
background runs and API handlers, so every connection runs in WAL mode with a
busy timeout.
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from orchestrator.core.config import get_settings

settings = get_settings()

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)


class Base(DeclarativeBase):
    pass


def async_database_url(url: str) -> str:
    """Return `url` with the async SQLite driver selected."""
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


database_url = async_database_url(settings.database_url)
is_sqlite = database_url.startswith("sqlite+aiosqlite://")

if database_url.startswith("sqlite+aiosqlite:///"):
    db_path = database_url[len("sqlite+aiosqlite:///"):]
    os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)

engine = create_async_engine(database_url, echo=settings.debug)

if is_sqlite:

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()


async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    """Create the session, batch, turn and container tables if missing."""
    from orchestrator.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit on success, roll back on error."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
