"""
Database Session Management - Async SQLAlchemy session factory.

Two databases:
- bot database (read/write): profiles, token ledger, conversation sessions
- external shop database (read-only): orders consumed by order redemption
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from promind.config import settings

# Lazily created on first use, disposed by close_engines()
_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker[AsyncSession]] = {}

BOT_DB = "bot"
SHOP_DB = "shop"


def _build_engine(name: str) -> AsyncEngine:
    if name == BOT_DB:
        return create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level == "DEBUG",
        )

    if not settings.main_database_url:
        raise RuntimeError("MAIN_DATABASE_URL is not configured")
    # Redemption is rare; a small pool is enough for the shop database
    return create_async_engine(
        settings.main_database_url,
        pool_size=2,
        max_overflow=0,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
    )


def get_engine(name: str = BOT_DB) -> AsyncEngine:
    """Get or create the engine for the named database."""
    if name not in _engines:
        _engines[name] = _build_engine(name)
    return _engines[name]


def get_session_factory(name: str = BOT_DB) -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory for the named database."""
    if name not in _factories:
        _factories[name] = async_sessionmaker(
            get_engine(name),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _factories[name]


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for the bot database (used by the generation service)."""
    return get_session_factory(BOT_DB)


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async session on the bot database.

    Usage:
        async with get_write_session() as session:
            ledger = LedgerService(session)
            await ledger.debit(user_id, 1, "chat")
    """
    async with get_session_factory(BOT_DB)() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_shop_session() -> AsyncIterator[AsyncSession]:
    """Get an async session on the external shop database (read-only use)."""
    async with get_session_factory(SHOP_DB)() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for the bot database session."""
    async with get_write_session() as session:
        yield session


async def get_main_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for the external shop database session."""
    async with get_shop_session() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    for name, engine in list(_engines.items()):
        await engine.dispose()
        del _engines[name]
        _factories.pop(name, None)
