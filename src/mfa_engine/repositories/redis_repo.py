from typing import Any

from redis.asyncio import Redis

# Deletes KEYS[1] only while it still holds ARGV[1]; returns the number of keys removed
DELETE_IF_EQUALS_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisRepository:
    """Ephemeral key-value cache with TTLs. ``consume`` is an atomic read-and-delete."""

    def __init__(self, client: Redis):
        self.client = client

    async def get(self, key: str) -> Any | None:
        return await self.client.get(key)

    async def set(self, key: str, value: Any, expire: int | None = None) -> None:
        await self.client.set(key, value, ex=expire)

    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) > 0

    async def consume(self, key: str) -> Any | None:
        # GETDEL: of two concurrent callers only one ever sees the value
        return await self.client.getdel(key)

    async def consume_if_equals(self, key: str, expected: str) -> bool:
        """Delete ``key`` if and only if it currently holds ``expected``, in one server-side step."""
        return bool(await self.client.eval(DELETE_IF_EQUALS_SCRIPT, 1, key, expected))
