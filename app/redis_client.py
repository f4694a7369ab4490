"""
Shared Redis client.

Request handlers receive it through the ``get_redis`` dependency; workers call
``get_redis()`` directly. Tests override the dependency with fakeredis.
"""
import redis

from app.config import settings

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True)
    return _client
