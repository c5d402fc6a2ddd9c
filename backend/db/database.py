"""SQLAlchemy async database setup and engine configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_db_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create and configure async SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy async URL, e.g. ``sqlite+aiosqlite:///:memory:``.
        echo: Log every SQL statement.

    Returns:
        Async SQLAlchemy engine instance.
    """
    kwargs = dict(echo=echo)
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        # One shared connection, otherwise each session sees an empty database.
        from sqlalchemy.pool import StaticPool

        kwargs.update(poolclass=StaticPool)
    elif not database_url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True)
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine):
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables. Called once at application startup."""
    from db.base import Base
    import db.models  # noqa: F401  registers the models on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections at application shutdown."""
    await engine.dispose()
