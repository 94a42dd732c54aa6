"""
Pytest configuration and fixtures for field encryption tests.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import AsyncGenerator, Iterator, List

import asyncpg
import pytest
from dotenv import load_dotenv

from safetypin_crypto import (
    DerivedLocalKeySource,
    FieldEncryptionService,
    KeySource,
    KeySourceUnavailable,
    SecureKey,
)

TEST_SECRET = "safetypin-test-secret"

ENV_VARS = (
    "SAFETYPIN_ENV",
    "NODE_ENV",
    "KMS_KEY_ID",
    "AWS_REGION",
    "DEV_ENCRYPTION_KEY",
    "SAFETYPIN_MAX_KEY_VERSIONS",
)


class RecordingKeySource(KeySource):
    """Key source minting random keys and recording every fetch."""

    name = "recording"
    supports_rotation = True

    def __init__(self) -> None:
        self.calls = 0
        self.keys: List[SecureKey] = []
        self.fail = False

    async def fetch_key(self) -> SecureKey:
        self.calls += 1
        # Yield so concurrent callers can interleave.
        await asyncio.sleep(0)
        if self.fail:
            raise KeySourceUnavailable("key service down")
        key = SecureKey.generate()
        self.keys.append(key)
        return key


@pytest.fixture
def recording_source() -> RecordingKeySource:
    return RecordingKeySource()


@pytest.fixture
async def local_service() -> AsyncGenerator[FieldEncryptionService, None]:
    """Development-mode service with a fixed derived test key."""
    service = FieldEncryptionService(DerivedLocalKeySource(TEST_SECRET))
    yield service
    await service.shutdown()


@pytest.fixture
async def production_service(
    recording_source: RecordingKeySource,
) -> AsyncGenerator[FieldEncryptionService, None]:
    """Production-mode service whose key source supports rotation."""
    service = FieldEncryptionService(recording_source, production=True, max_key_versions=3)
    yield service
    await service.shutdown()


@pytest.fixture
def clean_env() -> Iterator[None]:
    """Remove encryption settings from the environment before and after a test."""
    saved = {name: os.environ.pop(name) for name in ENV_VARS if name in os.environ}
    yield
    for name in ENV_VARS:
        os.environ.pop(name, None)
    os.environ.update(saved)


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    yield pool

    await pool.close()
