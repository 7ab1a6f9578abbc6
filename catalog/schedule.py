"""
Scheduled publications in a Redis sorted set: member = product id, score = epoch seconds of scheduled_at.
The scheduler pulls members whose score is <= now.
"""
from datetime import datetime, timezone

import redis.asyncio as redis

from catalog.config import settings

SCHEDULE_KEY = "schedule:product_publications"

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True, health_check_interval=30)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def get_schedule() -> "RedisPublicationSchedule":
    return RedisPublicationSchedule(await get_redis())


def _score(when: datetime) -> float:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.timestamp()


class RedisPublicationSchedule:
    def __init__(self, r: redis.Redis, key: str = SCHEDULE_KEY):
        self._redis = r
        self._key = key

    async def add(self, product_id: int, publish_at: datetime) -> None:
        # Re-scheduling overwrites the previous score
        await self._redis.zadd(self._key, {str(product_id): _score(publish_at)})

    async def remove(self, product_id: int) -> None:
        await self._redis.zrem(self._key, str(product_id))

    async def due(self, now: datetime, limit: int) -> list[int]:
        members = await self._redis.zrangebyscore(self._key, "-inf", _score(now), start=0, num=limit)
        return [int(m) for m in members]

    async def pending_count(self) -> int:
        return await self._redis.zcard(self._key)
