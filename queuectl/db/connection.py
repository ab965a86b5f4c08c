"""
Store connection management.

One async engine per process, shared by the worker pool, the API and CLI
commands. Each unit of work gets its own session and transaction from
``get_session_context``; driver and connection failures leave this module
as ``StoreError`` so callers never handle SQLAlchemy exceptions directly.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from queuectl.config import get_settings
from queuectl.errors import StoreError

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine(database_url: str | None = None) -> AsyncEngine:
    """
    Get the process-wide engine, creating it on first use.

    Args:
        database_url: Overrides the configured URL. Only honoured when the
            engine does not exist yet.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            database_url or settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
        )
    return _engine


async def init_db(database_url: str | None = None) -> None:
    """
    Prepare the engine and session factory.

    Must run before any session is opened. Creating the engine does not
    connect, so an unreachable store only surfaces on first use.
    """
    global _session_factory
    _session_factory = async_sessionmaker(
        bind=get_engine(database_url),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logger.debug("Store connection initialized")


async def close_db() -> None:
    """Dispose of the engine and its pooled connections."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.debug("Store connection closed")


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession]:
    """
    Run one unit of work in a transaction.

    Commits when the block exits normally and rolls back otherwise.

    Raises:
        RuntimeError: If ``init_db`` has not been called.
        StoreError: If the store fails while the session is in use.
    """
    if _session_factory is None:
        raise RuntimeError("Store not initialized. Call init_db() first.")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise StoreError(str(e)) from e
        except Exception:
            await session.rollback()
            raise


async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """FastAPI dependency yielding a transactional session per request."""
    async with get_session_context() as session:
        yield session
