"""
Database engine and session factories.

WHAT: Builds the application's async engine and AsyncSession factory, and
the get_db request dependency.

WHY: Requests and the billing jobs both need sessions: requests get one
per call through get_db, the jobs open their own from a factory. Building
engines through one function keeps the pool settings in Settings and lets
tests and jobs bind the same factory to another database.

HOW: PostgreSQL (asyncpg) gets a bounded, pre-pinged pool. SQLite
(aiosqlite, used by tests and local runs) gets no pool arguments, and an
in-memory database is pinned to one connection so every session sees the
same tables.
"""

from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from billing.core.config import settings


def engine_options(url: str) -> Dict[str, Any]:
    """
    Keyword arguments for create_async_engine for a database URL.

    Args:
        url: Async SQLAlchemy URL

    Returns:
        Engine keyword arguments (without the URL)
    """
    options: Dict[str, Any] = {"echo": settings.DEBUG}
    if url.startswith("sqlite"):
        if ":memory:" in url or "mode=memory" in url:
            options["poolclass"] = StaticPool
        return options

    options.update(
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_recycle=settings.DB_POOL_RECYCLE_SECONDS,
    )
    return options


def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Async engine for url (defaults to the configured database)."""
    url = url or settings.async_database_url
    return create_async_engine(url, **engine_options(url))


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """
    AsyncSession factory over an engine.

    Objects stay loaded after commit: services commit and then return the
    invoice or transaction they just changed.
    """
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session dependency.

    Services commit their own units of work. Anything still pending when
    the route returns is committed here, and everything is rolled back if
    the route raises.

    Yields:
        AsyncSession: Database session for the request
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close every pooled connection (application shutdown)."""
    await engine.dispose()
