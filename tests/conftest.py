"""Pytest configuration for shard checkpoint tests."""

import os

import pytest

from shard_checkpoint.backends import InMemoryCheckpointBackend
from shard_checkpoint.store import CheckpointStore


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (require Redis)"
    )


@pytest.fixture(scope="session")
def redis_url():
    """Get Redis URL from environment or use default."""
    return os.environ.get("REDIS_URL", "redis://localhost:6379")


@pytest.fixture
def backend():
    """Provide a fresh in-memory backend."""
    return InMemoryCheckpointBackend()


@pytest.fixture
def store(backend):
    """Provide a TRIM_HORIZON store over the in-memory backend."""
    return CheckpointStore("TRIM_HORIZON", backend=backend)
