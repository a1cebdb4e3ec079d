"""Database engine, session factory and schema bootstrap."""

from typing import Any, AsyncGenerator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from .config import settings


def engine_options(database_url: str) -> dict[str, Any]:
    """
    Engine keyword arguments for a database URL.

    Capacity, promo usage and installment claims are all conditional UPDATEs,
    so writers must queue on the row lock rather than fail fast. SQLite gets a
    busy timeout for that; Postgres blocks on the row lock by itself.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # One shared connection, or every session would see an empty database
            return {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        return {"connect_args": {"timeout": settings.db_lock_timeout_seconds}}

    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "connect_args": {"server_settings": {"application_name": "retreat-engine"}},
    }


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **engine_options(settings.database_url),
)

# Services flush explicitly; autoflush would issue writes in the middle of
# the availability checks that precede a conditional UPDATE.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a request-scoped session, rolled back if the request fails.

    Yields:
        AsyncSession: Database session
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create every table registered on ``Base.metadata``."""
    from .. import models  # noqa: F401 - register mappers on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
