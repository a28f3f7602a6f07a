"""Pytest configuration and fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from models import GuestBook, GuestBookSpec, ObjectKey, ObjectMeta
from store import MemoryStore


@pytest.fixture
def store():
    """An empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def key():
    return ObjectKey(namespace="default", name="gb")


@pytest.fixture
def make_guestbook():
    """Factory for GuestBook objects."""

    def _make(name="gb", namespace="default", replicas=None):
        return GuestBook(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=GuestBookSpec(replicas=replicas),
        )

    return _make


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection with a working transaction()."""
    conn = AsyncMock()
    transaction = AsyncMock()
    transaction.__aenter__ = AsyncMock(return_value=transaction)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_pool(mock_connection):
    """Create a mock asyncpg pool whose acquire() yields mock_connection."""
    pool = AsyncMock()

    @asynccontextmanager
    async def mock_acquire():
        yield mock_connection

    pool.acquire = mock_acquire
    return pool
