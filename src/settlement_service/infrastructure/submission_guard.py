from typing import TYPE_CHECKING

import structlog
from ulid import ULID


if TYPE_CHECKING:
    import redis.asyncio as redis

logger = structlog.get_logger()

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisSubmissionGuard:
    """
    In-flight purchase lock shared by every API worker.

    Uses SET NX with a TTL so a crashed worker cannot block a buyer for longer
    than `ttl_seconds`. Only the holder that set a key may release it.
    """

    def __init__(
        self,
        redis_client: "redis.Redis[str]",
        ttl_seconds: int = 900,
        key_prefix: str = "settlement:inflight:",
    ) -> None:
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix
        self._tokens: dict[str, str] = {}

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    async def acquire(self, key: str) -> bool:
        token = str(ULID())
        acquired = await self._redis.set(f"{self._key_prefix}{key}", token, nx=True, ex=self._ttl_seconds)
        if not acquired:
            logger.warning("submission_lock_busy", submission_key=key)
            return False
        self._tokens[key] = token
        return True

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        released = await self._redis.eval(RELEASE_SCRIPT, 1, f"{self._key_prefix}{key}", token)
        if not released:
            logger.warning("submission_lock_expired_before_release", submission_key=key)
