"""Async engine and session factory for the automation database.

Runs, progress writes, schedule bookkeeping and activity records each use
a short session of their own from ``AsyncSessionLocal``.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings

settings = get_settings()


def engine_options(url: str) -> dict:
    """Engine keyword arguments for ``url``; SQLite gets no connection pool tuning."""
    options: dict = {"echo": settings.SQLALCHEMY_ECHO}
    if not url.startswith("sqlite"):
        options.update(
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return options


def create_db_engine(url: Optional[str] = None) -> AsyncEngine:
    url = url or settings.DATABASE_URL
    return create_async_engine(url, **engine_options(url))


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Sessions keep loaded attributes after commit and never flush implicitly.

    Rows returned by a service stay readable once their session has closed.
    """
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


engine = create_db_engine()
AsyncSessionLocal = create_session_factory(engine)


async def init_db(db_engine: Optional[AsyncEngine] = None) -> None:
    """Create any missing tables. Existing tables are left untouched."""
    from db.base import Base
    import db.models  # noqa: F401  registers the models

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
