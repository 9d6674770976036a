"""
Provider Health Monitor.

Per-provider circuit breaker plus rolling health counters, stored in a Redis
hash (health:{provider}) so every worker process sees the same state.

    closed --(FAILURE_THRESHOLD failures)--> open
    open --(TIMEOUT_SECONDS elapsed, on next availability check)--> half_open
    half_open --(SUCCESS_THRESHOLD successes)--> closed
    half_open --(any failure)--> open

All mutations are Redis primitives (HINCRBY, HSET, EXPIRE). Two workers
recording a failure at the same moment both increment; the threshold check
tolerates the off-by-one. If Redis is unreachable the monitor fails open.
"""
import asyncio
import time
from typing import Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from notifyhub.config import Settings
from notifyhub.logging_config import get_logger
from notifyhub.metrics import track_circuit_transition, track_store_error
from notifyhub.models.health import CircuitState, ProviderHealthRecord

logger = get_logger(component="health_monitor")

STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class HealthMonitor:
    """Circuit breaker and health scoring for upstream providers."""

    def __init__(self, redis_client: redis.Redis, settings: Settings, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.failure_threshold = settings.CIRCUIT_FAILURE_THRESHOLD
        self.success_threshold = settings.CIRCUIT_SUCCESS_THRESHOLD
        self.timeout_seconds = settings.CIRCUIT_TIMEOUT_SECONDS
        self.record_ttl = settings.HEALTH_RECORD_TTL_SECONDS
        self.key_prefix = settings.HEALTH_KEY_PREFIX
        self.clock = clock

    def _key(self, provider: str) -> str:
        return f"{self.key_prefix}:{provider}"

    def _store_error(self, operation: str, provider: str, error: Exception):
        track_store_error("health_monitor")
        logger.warning(
            "health_store_unavailable",
            operation=operation,
            provider=provider,
            error=str(error),
            fail_open=True,
        )

    async def get_record(self, provider: str) -> ProviderHealthRecord:
        """
        Load the health record for a provider.

        A missing (never observed or TTL-expired) record reads as a fresh
        closed circuit. Store errors also return a fresh record.
        """
        try:
            data = await self.redis.hgetall(self._key(provider))
        except STORE_ERRORS as e:
            self._store_error("get_record", provider, e)
            return ProviderHealthRecord(provider=provider)
        return ProviderHealthRecord.from_hash(provider, data)

    async def _transition(self, provider: str, state: CircuitState, now: float, **fields) -> None:
        mapping = {"circuit_state": state.value, "success_count": 0, **fields}
        if state == CircuitState.OPEN:
            mapping["opened_at"] = now
        elif state == CircuitState.CLOSED:
            mapping["failure_count"] = 0
            mapping["opened_at"] = ""

        key = self._key(provider)
        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, self.record_ttl)
        await pipe.execute()

        track_circuit_transition(provider, state.value)
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"circuit_{state.value}", provider=provider, **{k: v for k, v in fields.items() if k != "last_error"})

    async def record_success(self, provider: str, response_time_ms: Optional[int] = None) -> None:
        """
        Record a successful send.

        Closed: failure_count resets, success_count increments.
        Half-open: success_count increments; reaching SUCCESS_THRESHOLD
        closes the circuit and resets both counters.
        """
        now = self.clock()
        key = self._key(provider)
        try:
            record = ProviderHealthRecord.from_hash(provider, await self.redis.hgetall(key))

            pipe = self.redis.pipeline(transaction=True)
            pipe.hincrby(key, "total_requests", 1)
            pipe.hincrby(key, "successful_requests", 1)
            pipe.hincrby(key, "success_count", 1)
            pipe.hset(key, "last_success", now)
            if record.circuit_state == CircuitState.CLOSED:
                pipe.hset(key, "failure_count", 0)
            pipe.expire(key, self.record_ttl)
            results = await pipe.execute()

            successful_requests = results[1]
            success_count = results[2]

            if response_time_ms is not None:
                previous = record.average_response_time_ms
                if previous is None or successful_requests <= 1:
                    average = float(response_time_ms)
                else:
                    average = previous + (response_time_ms - previous) / successful_requests
                await self.redis.hset(key, "average_response_time_ms", round(average, 2))

            if record.circuit_state == CircuitState.HALF_OPEN and success_count >= self.success_threshold:
                await self._transition(provider, CircuitState.CLOSED, now, recovered_after=success_count)
        except STORE_ERRORS as e:
            self._store_error("record_success", provider, e)

    async def record_failure(self, provider: str, error: Optional[str] = None) -> None:
        """
        Record a failed send.

        Closed: opens the circuit once failure_count reaches
        FAILURE_THRESHOLD. Half-open: re-opens immediately.
        """
        now = self.clock()
        key = self._key(provider)
        try:
            record = ProviderHealthRecord.from_hash(provider, await self.redis.hgetall(key))

            pipe = self.redis.pipeline(transaction=True)
            pipe.hincrby(key, "failure_count", 1)
            pipe.hincrby(key, "total_requests", 1)
            pipe.hset(key, mapping={"last_failure": now, "last_error": (error or "unknown error")[:500]})
            pipe.expire(key, self.record_ttl)
            results = await pipe.execute()

            failure_count = results[0]

            if record.circuit_state == CircuitState.HALF_OPEN:
                await self._transition(provider, CircuitState.OPEN, now, failure_count=failure_count)
            elif record.circuit_state == CircuitState.CLOSED and failure_count >= self.failure_threshold:
                await self._transition(provider, CircuitState.OPEN, now, failure_count=failure_count)
        except STORE_ERRORS as e:
            self._store_error("record_failure", provider, e)

    async def is_available(self, provider: str) -> bool:
        """
        Check whether a provider may receive traffic.

        An open circuit whose timeout has elapsed moves to half_open here
        and reports available.
        """
        try:
            data = await self.redis.hgetall(self._key(provider))
        except STORE_ERRORS as e:
            self._store_error("is_available", provider, e)
            return True

        record = ProviderHealthRecord.from_hash(provider, data)

        if record.circuit_state != CircuitState.OPEN:
            return True

        now = self.clock()
        if record.opened_at is not None and now - record.opened_at < self.timeout_seconds:
            return False

        try:
            # Trial starts from clean counters
            await self._transition(provider, CircuitState.HALF_OPEN, now, failure_count=0)
        except STORE_ERRORS as e:
            self._store_error("half_open_transition", provider, e)
        return True

    async def health_score(self, provider: str) -> float:
        """
        Heuristic health score in [0, 100].

        Success rate, capped at 25 while open and 75 while half-open, minus
        5 points per currently recorded failure.
        """
        record = await self.get_record(provider)
        return self.score_record(record)

    @staticmethod
    def score_record(record: ProviderHealthRecord) -> float:
        score = record.success_rate
        if record.circuit_state == CircuitState.OPEN:
            score = min(score, 25.0)
        elif record.circuit_state == CircuitState.HALF_OPEN:
            score = min(score, 75.0)
        score -= 5 * record.failure_count
        return round(max(0.0, score), 2)

    async def reset(self, provider: str) -> None:
        """Forget everything about a provider; it starts closed again."""
        try:
            await self.redis.delete(self._key(provider))
        except STORE_ERRORS as e:
            self._store_error("reset", provider, e)
            return
        track_circuit_transition(provider, CircuitState.CLOSED.value)
        logger.info("circuit_reset", provider=provider)

    async def force_open(self, provider: str, reason: str = "Manual failover") -> None:
        """Open a provider's circuit immediately, e.g. during a known outage."""
        now = self.clock()
        try:
            await self._transition(
                provider, CircuitState.OPEN, now, last_failure=now, last_error=reason
            )
        except STORE_ERRORS as e:
            self._store_error("force_open", provider, e)
