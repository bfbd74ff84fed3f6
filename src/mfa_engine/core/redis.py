import logging

import redis
import redis.asyncio as aioredis

from mfa_engine.core.config import settings

logger = logging.getLogger(__name__)


class RedisClient:
    client: aioredis.Redis | None = None

    async def connect(self) -> None:
        url = str(settings.REDIS_URL)

        self.client = aioredis.from_url(
            url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=10,
            socket_timeout=10,
            socket_keepalive=True,
            retry_on_timeout=True,
            retry_on_error=[
                redis.exceptions.ConnectionError,
                redis.exceptions.TimeoutError,
            ],
            health_check_interval=30,
        )
        await self.client.ping()
        logger.info(f"Connected to Redis at {url.rsplit('@', 1)[-1]}")

    async def disconnect(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None
            logger.info("Redis connection closed.")


redis_client = RedisClient()
