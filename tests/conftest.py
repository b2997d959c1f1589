"""Pytest configuration and shared fixtures."""

import random
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from src.models.config import PipelineConfig
from src.storage.database import Database
from tests.fixtures.sample_data import FakeClock, FakeWallClock, RecordingSleeper


@pytest.fixture(scope="session")
def deterministic_seed():
    """Set a fixed random seed for deterministic test results."""
    random.seed(42)
    return 42


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def fixed_now():
    """Wall clock frozen at 2024-01-01 12:03 UTC."""
    return FakeWallClock(datetime(2024, 1, 1, 12, 3, tzinfo=timezone.utc))


@pytest.fixture
def sample_config():
    """Provide a sample configuration for testing."""
    return PipelineConfig(
        github_api_url="http://mock-github",
        database_url="sqlite+aiosqlite:///:memory:",
        repositories=["octocat/hello-world", "acme/widgets"],
        batch_size=5,
        batch_delay_ms=0,
        cache_ttl_sec=60,
        circuit_failure_threshold=3,
        circuit_cooldown_ms=15000,
        max_retries=2,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        retry_jitter_max=0.0,
        low_water_mark_remaining=1,
        max_quota_wait_sec=1.0,
        enrichment_batch_size=10,
        enrichment_limit=50,
    )


@pytest_asyncio.fixture
async def database():
    """Fresh in-memory database with all tables created."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    yield db
    await db.close()
