"""
Throttle guard using Redis counters with expiry.

Caps how many jobs may contact a provider on a channel inside a window so a
burst of queued jobs cannot exceed upstream rate limits. Throttling is a
scheduling decision: a throttled job is released back to the queue with a
delay, it never fails.
"""
import asyncio
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from notifyhub.config import Settings
from notifyhub.logging_config import get_logger
from notifyhub.metrics import track_store_error

logger = get_logger(component="throttle")

STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

# Added to the remaining TTL when computing a release delay
RELEASE_BUFFER_SECONDS = 1


@dataclass(frozen=True)
class ThrottleDecision:
    """Result of a throttle check for one provider/channel."""
    throttled: bool
    delay_seconds: int = 0
    remaining: int = 0


class RateLimiter(Protocol):
    """What a job needs from a throttle: may I call this provider now?"""

    async def check(self, provider: str, channel: str) -> ThrottleDecision: ...


class ThrottleGuard:
    """Per (provider, channel) attempt counter with a fixed decay window."""

    def __init__(self, redis_client: redis.Redis, settings: Settings):
        self.redis = redis_client
        self.settings = settings
        self.key_prefix = settings.THROTTLE_KEY_PREFIX

    def key(self, provider: str, channel: str) -> str:
        return f"{self.key_prefix}:queue:{channel}:{provider}"

    def _store_error(self, operation: str, provider: str, channel: str, error: Exception):
        track_store_error("throttle")
        logger.warning(
            "throttle_store_unavailable",
            operation=operation,
            provider=provider,
            channel=channel,
            error=str(error),
            fail_open=True,
        )

    async def should_throttle(self, provider: str, channel: str, max_attempts: int, window_seconds: int) -> bool:
        """
        Compare the current count to max_attempts without incrementing.

        Returns False when Redis is unreachable.
        """
        try:
            current = await self.redis.get(self.key(provider, channel))
        except STORE_ERRORS as e:
            self._store_error("should_throttle", provider, channel, e)
            return False
        return int(current or 0) >= max_attempts

    async def hit(self, provider: str, channel: str, window_seconds: int) -> int:
        """
        Atomically increment the counter.

        The window starts on the first hit: the TTL is only set while the
        key has none, so later hits do not extend it.
        """
        key = self.key(provider, channel)
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = await pipe.execute()
            if ttl < 0:
                await self.redis.expire(key, window_seconds)
        except STORE_ERRORS as e:
            self._store_error("hit", provider, channel, e)
            return 0

        count = int(count)
        logger.debug("throttle_hit", provider=provider, channel=channel, count=count, window_seconds=window_seconds)
        return count

    async def remaining_attempts(self, provider: str, channel: str, max_attempts: int) -> int:
        try:
            current = await self.redis.get(self.key(provider, channel))
        except STORE_ERRORS as e:
            self._store_error("remaining_attempts", provider, channel, e)
            return max_attempts
        return max(0, max_attempts - int(current or 0))

    async def reset_time(self, provider: str, channel: str) -> int:
        """Seconds until the window resets (0 if there is no live counter)."""
        try:
            ttl = await self.redis.ttl(self.key(provider, channel))
        except STORE_ERRORS as e:
            self._store_error("reset_time", provider, channel, e)
            return 0
        # -1: no expiry, -2: no key
        return ttl if ttl > 0 else 0

    async def release_delay(self, provider: str, channel: str, window_seconds: int) -> int:
        """Delay before a throttled job should run again."""
        ttl = await self.reset_time(provider, channel)
        return max(ttl + RELEASE_BUFFER_SECONDS, window_seconds)

    async def check(self, provider: str, channel: str) -> ThrottleDecision:
        """
        Decide whether a job may contact `provider` now.

        Hits the counter only when the job is allowed to proceed, so a
        throttled job never counts against the window.
        """
        limit = self.settings.throttle_limit(provider, channel)

        if await self.should_throttle(provider, channel, limit.max_attempts, limit.window_seconds):
            delay = await self.release_delay(provider, channel, limit.window_seconds)
            remaining = await self.remaining_attempts(provider, channel, limit.max_attempts)
            logger.info(
                "job_throttled",
                provider=provider,
                channel=channel,
                delay_seconds=delay,
                remaining_attempts=remaining,
                max_attempts=limit.max_attempts,
            )
            return ThrottleDecision(throttled=True, delay_seconds=delay, remaining=remaining)

        count = await self.hit(provider, channel, limit.window_seconds)
        return ThrottleDecision(throttled=False, remaining=max(0, limit.max_attempts - count))
