import redis.asyncio as redis
import structlog

from escrow_service.config import settings
from escrow_service.infrastructure.idempotency import RedisIdempotencyCoordinator


logger = structlog.get_logger()


class RedisClient:
    """Owns the Redis connection behind escrow locks and webhook markers.

    Socket timeouts are kept short: an unreachable Redis must surface as
    ``CoordinatorUnavailableError`` quickly rather than stall a money movement.
    """

    def __init__(self, url: str | None = None, socket_timeout: float | None = None) -> None:
        self._url = url or settings.redis_url
        self._socket_timeout = socket_timeout or settings.redis_socket_timeout_seconds
        self._client: redis.Redis[bytes] | None = None

    @property
    def client(self) -> "redis.Redis[bytes]":
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    async def connect(self) -> None:
        self._client = redis.from_url(
            self._url,
            decode_responses=False,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        await self._client.ping()
        logger.info("redis_connected", url=self._url, socket_timeout=self._socket_timeout)

    def coordinator(
        self,
        key_prefix: str | None = None,
        marker_ttl_days: int | None = None,
    ) -> RedisIdempotencyCoordinator:
        """Lock and marker store on this connection, namespaced under ``key_prefix``."""
        ttl_days = marker_ttl_days or settings.webhook_marker_ttl_days
        return RedisIdempotencyCoordinator(
            self.client,
            key_prefix=key_prefix or settings.key_prefix,
            default_marker_ttl_seconds=ttl_days * 24 * 3600,
        )

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("redis_disconnected")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.ping()
        except redis.RedisError as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return False
        return True
