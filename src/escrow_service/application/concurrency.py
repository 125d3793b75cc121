from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog
from ulid import ULID

from escrow_service.application.ports import IdempotencyCoordinator
from escrow_service.domain.exceptions import (
    ConcurrentModificationError,
    CoordinatorUnavailableError,
    LockConflictError,
)


logger = structlog.get_logger()

R = TypeVar("R")


@asynccontextmanager
async def exclusive(
    coordinator: IdempotencyCoordinator,
    key: str,
    ttl_seconds: int,
    payment_id: str | None = None,
) -> AsyncIterator[str]:
    """Hold the named lock ``key`` for the duration of the block.

    Raises LockConflictError when another owner holds it. The lock is
    released on every exit path; a failed release is left to the TTL.
    """
    owner = str(ULID())
    if not await coordinator.acquire_lock(key, owner, ttl_seconds):
        logger.info("lock_conflict", lock_key=key, payment_id=payment_id)
        raise LockConflictError(key, payment_id)

    try:
        yield owner
    finally:
        try:
            released = await coordinator.release_lock(key, owner)
        except CoordinatorUnavailableError:
            logger.warning("lock_release_failed", lock_key=key, ttl_seconds=ttl_seconds)
        else:
            if not released:
                logger.warning("lock_expired_before_release", lock_key=key, ttl_seconds=ttl_seconds)


async def retry_on_conflict(
    operation: Callable[[], Awaitable[R]],
    attempts: int = 3,
) -> R:
    """Re-run ``operation`` on ConcurrentModificationError.

    ``operation`` must reload whatever it mutates, every attempt starts
    from a fresh read. Other errors propagate immediately.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except ConcurrentModificationError as e:
            if attempt >= attempts:
                logger.warning(
                    "concurrent_modification_retries_exhausted",
                    entity=e.entity,
                    entity_id=e.entity_id,
                    attempts=attempts,
                )
                raise
            logger.info(
                "concurrent_modification_retry",
                entity=e.entity,
                entity_id=e.entity_id,
                attempt=attempt,
            )
            attempt += 1
