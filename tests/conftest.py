"""pytest fixtures for Content Sync tests."""

import os

# Set environment variables BEFORE any imports
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost/test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("CREDENTIAL_ENCRYPTION_KEY", "ab" * 32)

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from content_sync.credentials import CredentialCipher

TEST_ENCRYPTION_KEY = "ab" * 32


@pytest.fixture
def mock_postgres():
    """Create a mock PostgreSQL client."""
    postgres = MagicMock()
    postgres.pool = MagicMock()

    # Create async context manager mock for pool.acquire()
    conn_mock = AsyncMock()
    conn_mock.execute = AsyncMock(return_value="UPDATE 1")
    conn_mock.fetchrow = AsyncMock(return_value=None)
    conn_mock.fetch = AsyncMock(return_value=[])
    conn_mock.fetchval = AsyncMock(return_value=0)

    transaction_cm = MagicMock()
    transaction_cm.__aenter__ = AsyncMock(return_value=None)
    transaction_cm.__aexit__ = AsyncMock(return_value=None)
    conn_mock.transaction = MagicMock(return_value=transaction_cm)

    async_cm = AsyncMock()
    async_cm.__aenter__ = AsyncMock(return_value=conn_mock)
    async_cm.__aexit__ = AsyncMock(return_value=None)

    postgres.pool.acquire = MagicMock(return_value=async_cm)
    postgres._conn_mock = conn_mock  # Store for test access

    return postgres


@pytest.fixture
def mock_redis_client():
    """Mock RedisClient wrapper."""
    from content_sync.db.redis import RedisClient

    client = MagicMock(spec=RedisClient)
    client.publish_job = AsyncMock(return_value="1234567890-0")
    client.ensure_consumer_group = AsyncMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    return client


@pytest.fixture
def cipher():
    """Credential cipher with a fixed test key."""
    return CredentialCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def organization_id():
    """Provide a sample organization ID."""
    return uuid4()
