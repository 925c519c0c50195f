"""Database engine and session management."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from polybuddy.storage.models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine and hands out sessions.

    Sessions are short-lived: callers open one per unit of work and
    commit explicitly. A session that raises is rolled back on exit.

    Example:
        ```python
        db = DatabaseManager("sqlite+aiosqlite:///:memory:")
        await db.create_tables()
        async with db.get_async_session() as session:
            repo = MarketRepository(session)
            ...
            await session.commit()
        ```
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        """Initialize the manager.

        Args:
            url: SQLAlchemy URL with an async driver.
            echo: Log emitted SQL statements.
        """
        self._url = url
        engine_kwargs: dict[str, object] = {"echo": echo}
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection so every session sees the same database.
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True
        self._engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        """Underlying async engine."""
        return self._engine

    @contextlib.asynccontextmanager
    async def get_async_session(self) -> AsyncIterator[AsyncSession]:
        """Open a session, rolling back if the block raises."""
        session = self._session_factory()
        try:
            yield session
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_tables(self) -> None:
        """Create all tables that do not exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self._engine.dispose()
