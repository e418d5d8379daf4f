"""SQLAlchemy async database setup and engine configuration."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.config import get_settings


def create_db_engine(url: Optional[str] = None) -> AsyncEngine:
    """Create and configure async SQLAlchemy engine.

    Args:
        url: Database URL, defaults to ``DATABASE_URL``.

    Returns:
        Async SQLAlchemy engine instance.
    """
    settings = get_settings()
    url = url or settings.DATABASE_URL
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO)
    if url.startswith("sqlite"):
        if ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        kwargs.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Called once at startup by the composition root."""
    from db.base import Base
    import db.models  # noqa: F401  registers every model

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections at shutdown."""
    await engine.dispose()
