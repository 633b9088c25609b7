import redis.asyncio as redis
import structlog

from settlement_service.config import settings


logger = structlog.get_logger()


class RedisClient:
    """Async Redis client wrapper used for cross-worker submission locks."""

    def __init__(self, url: str | None = None) -> None:
        self._url = url or settings.redis_url
        self._client: redis.Redis[str] | None = None

    @property
    def client(self) -> "redis.Redis[str]":
        """Get the Redis client. Raises if not connected."""
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        self._client = redis.from_url(
            self._url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self._client.ping()
        logger.info("redis_connected", url=self._url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    async def health_check(self) -> bool:
        """Check if Redis answers a PING."""
        if self._client is None:
            return False
        try:
            await self._client.ping()
        except redis.RedisError as e:
            logger.warning("redis_health_check_failed", error=str(e))
            return False
        return True
