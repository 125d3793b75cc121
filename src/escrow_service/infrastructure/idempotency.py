import redis.asyncio as redis
import structlog

from escrow_service.domain.exceptions import CoordinatorUnavailableError


logger = structlog.get_logger()


class RedisIdempotencyCoordinator:
    """
    Redis-backed locks and processed-event markers.

    Locks are ``SET NX PX`` with an owner token, released only by that owner
    via a compare-and-delete script. Markers are ``SET NX EX``; the first
    writer wins. Any Redis error is raised as CoordinatorUnavailableError so
    callers fail closed.
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        client: "redis.Redis[bytes]",
        key_prefix: str = "escrow:",
        default_marker_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self._client = client
        self._prefix = key_prefix
        self._default_marker_ttl = default_marker_ttl_seconds

    def lock_key(self, key: str) -> str:
        return f"{self._prefix}lock:{key}"

    def marker_key(self, event_key: str) -> str:
        return f"{self._prefix}event:{event_key}"

    async def acquire_lock(self, key: str, owner: str, ttl_seconds: int) -> bool:
        redis_key = self.lock_key(key)
        try:
            acquired = await self._client.set(redis_key, owner, nx=True, px=ttl_seconds * 1000)
        except redis.RedisError as e:
            logger.error("lock_acquire_unavailable", lock_key=redis_key, error=str(e))
            raise CoordinatorUnavailableError("acquire_lock", redis_key) from e
        return bool(acquired)

    async def release_lock(self, key: str, owner: str) -> bool:
        redis_key = self.lock_key(key)
        try:
            result = await self._client.eval(self.RELEASE_SCRIPT, 1, redis_key, owner)
        except redis.RedisError as e:
            logger.error("lock_release_unavailable", lock_key=redis_key, error=str(e))
            raise CoordinatorUnavailableError("release_lock", redis_key) from e
        return bool(result)

    async def mark_processed(self, event_key: str, ttl_seconds: int | None = None) -> bool:
        """Record ``event_key`` as seen. Returns True only for the first caller."""
        redis_key = self.marker_key(event_key)
        try:
            created = await self._client.set(
                redis_key,
                "1",
                nx=True,
                ex=ttl_seconds or self._default_marker_ttl,
            )
        except redis.RedisError as e:
            logger.error("marker_unavailable", event_key=redis_key, error=str(e))
            raise CoordinatorUnavailableError("mark_processed", redis_key) from e
        return bool(created)
