"""Tests for the Redis fixed-window rate limiter."""
from unittest.mock import MagicMock

import pytest
import redis

from app.errors import RateLimitError
from app.services.rate_limiter import RATE_LIMITS, RateLimiter


class TestRateLimiterCheck:
    """Tests for RateLimiter.check."""

    def test_allows_up_to_limit(self, rate_limiter):
        """Calls within the limit pass."""
        for _ in range(RATE_LIMITS["GDPR_DELETE_REQUEST"].max_requests):
            rate_limiter.check("GDPR_DELETE_REQUEST", "user-1")

    def test_rejects_call_over_limit_with_retry_after(self, rate_limiter):
        """The first call over the limit raises with the seconds left in the window."""
        rate_limiter.check("GDPR_DATA_EXPORT", "user-1")

        with pytest.raises(RateLimitError) as exc_info:
            rate_limiter.check("GDPR_DATA_EXPORT", "user-1")

        assert exc_info.value.status_code == 429
        assert 0 < exc_info.value.retry_after <= 24 * 3600

    def test_windows_are_per_actor_and_operation(self, rate_limiter):
        """One actor's usage does not count against another's."""
        rate_limiter.check("GDPR_DATA_EXPORT", "user-1")
        rate_limiter.check("GDPR_DATA_EXPORT", "user-2")
        rate_limiter.check("GDPR_DELETE_REQUEST", "user-1")

    def test_window_sets_ttl(self, rate_limiter, redis_client):
        """The window key expires after the rule's window."""
        rate_limiter.check("GDPR_RECOVERY_CODE", "user-1")

        ttl = redis_client.ttl("ratelimit:GDPR_RECOVERY_CODE:user-1")
        assert 0 < ttl <= 3600

    def test_new_window_after_expiry(self, rate_limiter, redis_client):
        """Once the key expires, calls are allowed again."""
        rate_limiter.check("GDPR_DATA_EXPORT", "user-1")
        redis_client.delete("ratelimit:GDPR_DATA_EXPORT:user-1")

        rate_limiter.check("GDPR_DATA_EXPORT", "user-1")

    def test_unknown_operation_uses_default_rule(self, rate_limiter):
        """Unlisted operations fall back to the DEFAULT rule."""
        for _ in range(RATE_LIMITS["DEFAULT"].max_requests):
            rate_limiter.check("SOMETHING_ELSE", "user-1")
        with pytest.raises(RateLimitError):
            rate_limiter.check("SOMETHING_ELSE", "user-1")

    def test_fails_open_when_redis_unavailable(self):
        """A Redis outage lets requests through rather than blocking users."""
        client = MagicMock()
        client.pipeline.return_value.execute.side_effect = redis.ConnectionError("down")

        RateLimiter(client).check("GDPR_DATA_EXPORT", "user-1")


class TestRateLimiterRemaining:
    """Tests for RateLimiter.remaining and reset."""

    def test_remaining_counts_down(self, rate_limiter):
        rate_limiter.check("GDPR_DELETE_REQUEST", "user-1")

        result = rate_limiter.remaining("GDPR_DELETE_REQUEST", "user-1")

        assert result["remaining"] == 2
        assert result["reset_at"] is not None

    def test_remaining_for_fresh_actor(self, rate_limiter):
        result = rate_limiter.remaining("GDPR_DELETE_REQUEST", "nobody")

        assert result == {"remaining": 3, "reset_at": None}

    def test_reset_clears_window(self, rate_limiter):
        rate_limiter.check("GDPR_DATA_EXPORT", "user-1")
        rate_limiter.reset("GDPR_DATA_EXPORT", "user-1")

        rate_limiter.check("GDPR_DATA_EXPORT", "user-1")
