"""
MathPulse Worker – Database Engine & Session Factory.

Uses the SQLAlchemy 2.0 asyncio extension. The engine and session factory
are built by the runtime from `DATABASE_URL` and handed to every service
that needs the record store; nothing here opens a connection at import time.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


def build_engine(url: str) -> AsyncEngine:
    """
    Create the async engine for the record store.

    SQLite (aiosqlite) is used for local development and tests; server
    databases get a bounded pool sized for two small worker pools plus the
    request handlers.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)

    return create_async_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections every 30 minutes
        echo=False,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables. Existing tables are left untouched."""
    import models  # noqa: F401  (registers the mappers on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
