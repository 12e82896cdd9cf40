"""
Pytest configuration and shared fixtures for tallyflow tests.

Testing Standards:
- All async tests use pytest.mark.asyncio (auto mode enabled in pyproject.toml)
- In-memory stubs from tallyflow.infrastructure.stubs stand in for Redis
  and the database in unit tests
- Unit tests go in tests/unit/
- Integration tests go in tests/integration/ (Docker required)
"""

import pytest

from tallyflow.infrastructure.stubs import TallyStoreStub, VoteQueueStub

CANDIDATES = frozenset({"A", "B", "C"})


@pytest.fixture
def anyio_backend() -> str:
    """Use asyncio as the async backend."""
    return "asyncio"


@pytest.fixture
def project_version() -> str:
    """Provide the current project version for tests."""
    from tallyflow import __version__

    return __version__


@pytest.fixture
def candidates() -> frozenset[str]:
    return CANDIDATES


@pytest.fixture
def store() -> TallyStoreStub:
    return TallyStoreStub()


@pytest.fixture
def queue() -> VoteQueueStub:
    return VoteQueueStub()
