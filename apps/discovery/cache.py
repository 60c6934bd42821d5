# apps/discovery/cache.py
import redis.asyncio as redis
from config import settings

redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)


async def healthcheck() -> bool:
    return bool(await redis_client.ping())
