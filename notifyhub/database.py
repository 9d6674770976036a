"""
Database engine and session factory.

One engine per process, created at startup from Settings and disposed on
shutdown.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from notifyhub.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured DATABASE_URL."""
    kwargs = {"echo": False, "pool_pre_ping": True}
    if settings.DATABASE_URL.startswith("sqlite"):
        kwargs.pop("pool_pre_ping")
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
