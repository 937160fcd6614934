from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from sharegate.config import Settings


def build_engine(settings: Settings) -> AsyncEngine:
    dsn = settings.database_dsn
    if dsn.startswith("sqlite"):
        # single-file SQLite: writers wait on the lock instead of failing fast
        return create_async_engine(dsn, echo=False, connect_args={"timeout": 30})
    return create_async_engine(
        dsn,
        echo=False,
        pool_size=int(settings.database_pool_size),
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
