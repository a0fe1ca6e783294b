"""Database engine, sessions and schema bootstrap."""

from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from forge_navigator.core.config import settings

logger = structlog.get_logger()


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _get_engine_kwargs(url: str) -> dict[str, Any]:
    """Get engine kwargs based on database type."""
    kwargs: dict[str, Any] = {"echo": settings.debug}

    # SQLite doesn't support connection pooling options
    if not _is_sqlite(url):
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
            }
        )

    return kwargs


engine = create_async_engine(settings.database_url, **_get_engine_kwargs(settings.database_url))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_schema() -> None:
    """Create tables directly for SQLite development databases.

    Postgres deployments are migrated with Alembic instead.
    """
    if not _is_sqlite(settings.database_url):
        return

    from forge_navigator.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Created SQLite schema", database_url=settings.database_url)


async def check_database_connection() -> bool:
    """Check if database is reachable."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


async def close_database() -> None:
    """Close database connections."""
    await engine.dispose()
