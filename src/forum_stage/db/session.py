"""Database engine and session configuration."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from forum_stage.core.settings import Settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the pooled async engine described by ``settings``."""
    url = settings.effective_database_url
    options: dict[str, object] = {"echo": settings.sql_debug, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
    return create_async_engine(url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory whose objects stay readable after commit."""
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all database tables."""
    # Ensure model modules are imported so that metadata is populated.
    import forum_stage.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

