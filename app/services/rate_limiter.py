"""
Fixed-window rate limiter keyed by (operation, actor).

Each check is one MULTI/EXEC round trip: ``SET NX EX`` opens the window with
its TTL, ``INCR`` counts the call, ``TTL`` reports when the window resets. No
value is read before it is written, so concurrent calls from the same actor
cannot both slip under the limit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import redis

from app.database import utcnow
from app.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: int


RATE_LIMITS = {
    "GDPR_DATA_EXPORT": RateLimitRule(max_requests=1, window_seconds=24 * 3600),
    "GDPR_DELETE_REQUEST": RateLimitRule(max_requests=3, window_seconds=24 * 3600),
    "GDPR_RECOVERY_CODE": RateLimitRule(max_requests=3, window_seconds=3600),
    "GDPR_RECOVER_ACCOUNT": RateLimitRule(max_requests=5, window_seconds=24 * 3600),
    "NOTIFICATION_SETTINGS": RateLimitRule(max_requests=10, window_seconds=3600),
    "AUTH_CHECK_EMAIL": RateLimitRule(max_requests=10, window_seconds=60),
    "DEFAULT": RateLimitRule(max_requests=60, window_seconds=60),
}


class RateLimiter:
    """Gate for export, deletion and settings requests."""

    KEY_PREFIX = "ratelimit"

    def __init__(self, redis_client: redis.Redis, now: Callable[[], datetime] = utcnow):
        self.redis = redis_client
        self.now = now

    def _rule(self, operation_key: str) -> RateLimitRule:
        return RATE_LIMITS.get(operation_key, RATE_LIMITS["DEFAULT"])

    def _key(self, operation_key: str, actor_id) -> str:
        return f"{self.KEY_PREFIX}:{operation_key}:{actor_id}"

    def check(self, operation_key: str, actor_id) -> None:
        """
        Count one call and reject it if the window is already full.

        Raises:
            RateLimitError: with ``retry_after`` set to the seconds left in the
                current window.
        """
        rule = self._rule(operation_key)
        key = self._key(operation_key, actor_id)

        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(key, 0, ex=rule.window_seconds, nx=True)
            pipe.incr(key)
            pipe.ttl(key)
            _, count, ttl = pipe.execute()
        except redis.RedisError as e:
            # Fail open
            logger.warning("Rate limiter unavailable for %s/%s: %s", operation_key, actor_id, e)
            return

        if count > rule.max_requests:
            retry_after = ttl if ttl and ttl > 0 else rule.window_seconds
            logger.warning(
                "Rate limit exceeded: %s by %s (%d/%d)",
                operation_key, actor_id, count, rule.max_requests,
            )
            raise RateLimitError(
                "Too many requests. Please try again later.",
                retry_after=retry_after,
            )

    def remaining(self, operation_key: str, actor_id) -> dict:
        """Remaining quota and reset time for the current window."""
        rule = self._rule(operation_key)
        key = self._key(operation_key, actor_id)
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.get(key)
            pipe.ttl(key)
            raw_count, ttl = pipe.execute()
        except redis.RedisError as e:
            logger.warning("Rate limiter unavailable for %s/%s: %s", operation_key, actor_id, e)
            return {"remaining": rule.max_requests, "reset_at": None}

        used = int(raw_count or 0)
        reset_at = self.now() + timedelta(seconds=ttl) if ttl and ttl > 0 else None
        return {
            "remaining": max(rule.max_requests - used, 0),
            "reset_at": reset_at.isoformat() if reset_at else None,
        }

    def reset(self, operation_key: str, actor_id) -> None:
        """Clear the window (operator action)."""
        self.redis.delete(self._key(operation_key, actor_id))
