"""Shared fixtures for database-backed tests."""

from collections.abc import AsyncIterator

import pytest_asyncio

from polybuddy.storage.database import DatabaseManager


@pytest_asyncio.fixture
async def db() -> AsyncIterator[DatabaseManager]:
    """An in-memory SQLite database with all tables created."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.create_tables()
    yield manager
    await manager.dispose()
