"""
Integration test configuration with testcontainers.

This module provides session-scoped container fixtures for integration testing:
- PostgreSQL 16 container (tally store)
- Redis 7 container (vote queue)

Containers are started once per test session; the schema and Redis keys
are reset for every test.

Usage:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_example(pg_store: SqlTallyStore, redis_queue: RedisVoteQueue) -> None:
        ...

Note: Docker must be running for these fixtures to work.
"""

from collections.abc import AsyncGenerator, Generator
from typing import Any

import pytest
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from tallyflow.bootstrap.database import create_engine_for_url, create_session_factory
from tallyflow.infrastructure.adapters.persistence import (
    SqlTallyStore,
    create_schema,
    drop_schema,
)
from tallyflow.infrastructure.adapters.queue import RedisVoteQueue

CANDIDATES = frozenset({"A", "B", "C"})


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """Session-scoped PostgreSQL 16 container."""
    with PostgresContainer("postgres:16-alpine") as postgres:
        yield postgres


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    """Session-scoped Redis 7 container."""
    with RedisContainer("redis:7-alpine") as redis_cont:
        yield redis_cont


@pytest.fixture(scope="session")
def postgres_async_url(postgres_container: PostgresContainer) -> str:
    """Get async-compatible PostgreSQL connection URL.

    testcontainers returns a psycopg2 URL by default; convert to asyncpg.
    """
    sync_url = postgres_container.get_connection_url()
    async_url: str = sync_url.replace(
        "postgresql+psycopg2://", "postgresql+asyncpg://"
    ).replace("postgresql://", "postgresql+asyncpg://")
    return async_url


@pytest.fixture
async def pg_engine(postgres_async_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Per-test engine with a freshly created schema."""
    engine = create_engine_for_url(postgres_async_url)
    await drop_schema(engine)
    await create_schema(engine)
    yield engine
    await drop_schema(engine)
    await engine.dispose()


@pytest.fixture
async def pg_store(pg_engine: AsyncEngine) -> SqlTallyStore:
    store = SqlTallyStore(create_session_factory(pg_engine))
    await store.ensure_options(CANDIDATES)
    return store


@pytest.fixture
async def redis_client(
    redis_container: RedisContainer,
) -> AsyncGenerator[aioredis.Redis, None]:  # type: ignore[type-arg]
    """Per-test Redis client with FLUSHDB isolation."""
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)

    client: aioredis.Redis[Any] = aioredis.Redis(host=host, port=int(port))

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture
def redis_queue(redis_client: aioredis.Redis) -> RedisVoteQueue:  # type: ignore[type-arg]
    return RedisVoteQueue(redis_client, key_prefix="test:votes", visibility_timeout=30.0)
