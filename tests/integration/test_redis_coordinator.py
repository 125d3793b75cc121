"""Integration tests for the Redis lock and marker store."""

import asyncio
from collections.abc import AsyncIterator

import pytest
from ulid import ULID

from escrow_service.application.concurrency import exclusive
from escrow_service.domain.exceptions import LockConflictError
from escrow_service.infrastructure.idempotency import RedisIdempotencyCoordinator
from escrow_service.infrastructure.redis_client import RedisClient


pytestmark = pytest.mark.integration


@pytest.fixture
async def redis_client(redis_url: str) -> AsyncIterator[RedisClient]:
    client = RedisClient(url=redis_url)
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
def coordinator(redis_client: RedisClient) -> RedisIdempotencyCoordinator:
    # Fresh prefix per test so keys never leak between tests.
    return RedisIdempotencyCoordinator(redis_client.client, key_prefix=f"it:{ULID()}:")


class TestLocks:
    @pytest.mark.asyncio
    async def test_only_one_owner_at_a_time(self, coordinator: RedisIdempotencyCoordinator) -> None:
        assert await coordinator.acquire_lock("escrow-release:p1", "worker-a", 30) is True
        assert await coordinator.acquire_lock("escrow-release:p1", "worker-b", 30) is False

        assert await coordinator.release_lock("escrow-release:p1", "worker-b") is False
        assert await coordinator.release_lock("escrow-release:p1", "worker-a") is True
        assert await coordinator.acquire_lock("escrow-release:p1", "worker-b", 30) is True

    @pytest.mark.asyncio
    async def test_lock_expires(
        self,
        coordinator: RedisIdempotencyCoordinator,
        redis_client: RedisClient,
    ) -> None:
        await coordinator.acquire_lock("refund:p2", "worker-a", 1)

        ttl_ms = await redis_client.client.pttl(coordinator.lock_key("refund:p2"))
        assert 0 < ttl_ms <= 1000

        await asyncio.sleep(1.2)
        assert await coordinator.acquire_lock("refund:p2", "worker-b", 30) is True

    @pytest.mark.asyncio
    async def test_exclusive_against_real_redis(self, coordinator: RedisIdempotencyCoordinator) -> None:
        async with exclusive(coordinator, "escrow-release:p3", 30, "p3"):
            with pytest.raises(LockConflictError):
                async with exclusive(coordinator, "escrow-release:p3", 30, "p3"):
                    pass

        async with exclusive(coordinator, "escrow-release:p3", 30, "p3"):
            pass


class TestMarkers:
    @pytest.mark.asyncio
    async def test_first_writer_wins_under_concurrency(self, coordinator: RedisIdempotencyCoordinator) -> None:
        results = await asyncio.gather(*(coordinator.mark_processed("event:evt_1", 60) for _ in range(20)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_marker_uses_default_ttl(
        self,
        redis_client: RedisClient,
    ) -> None:
        coordinator = RedisIdempotencyCoordinator(
            redis_client.client,
            key_prefix=f"it:{ULID()}:",
            default_marker_ttl_seconds=120,
        )

        await coordinator.mark_processed("fact:capture:pay_1")

        ttl = await redis_client.client.ttl(coordinator.marker_key("fact:capture:pay_1"))
        assert 100 <= ttl <= 120
