"""Async SQLAlchemy engine, session factory and credentialed store clients.

Supports both PostgreSQL (production) and SQLite (local dev mode).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → single-connection SQLite engine
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Automatically dispatches to the correct backend based on URL scheme:

    * ``postgresql+asyncpg://`` → pooled PostgreSQL engine
    * ``sqlite+aiosqlite://`` → single-connection SQLite engine

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if database_url.startswith("sqlite"):
        from gateway_core.state.sqlite_adapter import get_local_engine

        # Extract path from URL: sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path if db_path else ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",  # 30 s
                "lock_timeout": "10000",  # 10 s
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session with automatic commit/rollback semantics.

    On successful exit the session is committed.  If an exception propagates
    the session is rolled back before the error is re-raised.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# ---------------------------------------------------------------------------
# Credentialed store clients
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StoreClient:
    """A named session factory bound to one set of store credentials."""

    name: str
    session_factory: async_sessionmaker[AsyncSession]

    def scope(self) -> AbstractAsyncContextManager[AsyncSession]:
        return session_scope(self.session_factory)


class AllStoreClientsFailed(Exception):
    """Every client in the ordered list failed the same write."""

    def __init__(self, errors: list[tuple[str, Exception]]) -> None:
        self.errors = errors
        summary = "; ".join(f"{name}: {exc}" for name, exc in errors)
        super().__init__(f"All store clients failed: {summary}")


async def write_with_fallback(
    clients: Sequence[StoreClient],
    write: Callable[[AsyncSession], Awaitable[T]],
) -> tuple[T, str]:
    """Run *write* against each client in order until one commits.

    Each attempt runs in its own transaction, so a failure on one client
    leaves nothing behind before the next is tried.

    Parameters
    ----------
    clients:
        Ordered list of store clients (primary first).
    write:
        Coroutine function receiving the session to write through.

    Returns
    -------
    tuple
        ``(result, client_name)`` for the first client that succeeded.

    Raises
    ------
    AllStoreClientsFailed
        When every client raised.
    """
    errors: list[tuple[str, Exception]] = []
    for client in clients:
        try:
            async with client.scope() as session:
                result = await write(session)
        except (SQLAlchemyError, OSError, ValueError) as exc:
            logger.warning("Store write via %s client failed: %s", client.name, exc)
            errors.append((client.name, exc))
            continue
        logger.info("Store write succeeded via %s client", client.name)
        return result, client.name
    raise AllStoreClientsFailed(errors)
