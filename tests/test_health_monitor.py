"""
Tests for the provider circuit breaker.

Tests cover:
- closed -> open after FAILURE_THRESHOLD failures
- open -> half_open only after the timeout
- half_open -> open on any failure, half_open -> closed after SUCCESS_THRESHOLD successes
- Rolling counters and health score
- Fail-open when Redis is unreachable
"""
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from notifyhub.models.health import CircuitState, ProviderHealthRecord
from notifyhub.services.health_monitor import HealthMonitor


@pytest.fixture
def monitor(redis_client, settings, clock) -> HealthMonitor:
    return HealthMonitor(redis_client, settings, clock=clock)


async def open_circuit(monitor: HealthMonitor, provider: str = "beem"):
    for _ in range(5):
        await monitor.record_failure(provider, "Connection timed out")


class TestOpening:

    async def test_fresh_provider_is_closed_and_available(self, monitor):
        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.CLOSED
        assert await monitor.is_available("beem") is True

    async def test_four_failures_keep_circuit_closed(self, monitor):
        for _ in range(4):
            await monitor.record_failure("beem", "boom")

        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.CLOSED
        assert record.failure_count == 4
        assert await monitor.is_available("beem") is True

    async def test_five_failures_open_circuit(self, monitor, clock):
        await open_circuit(monitor)

        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.OPEN
        assert record.opened_at == clock.now
        assert record.last_error == "Connection timed out"
        assert await monitor.is_available("beem") is False

    async def test_success_resets_failure_count_while_closed(self, monitor):
        for _ in range(4):
            await monitor.record_failure("beem", "boom")
        await monitor.record_success("beem", 120)
        for _ in range(4):
            await monitor.record_failure("beem", "boom")

        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.CLOSED
        assert record.failure_count == 4


class TestTimeout:

    async def test_unavailable_until_timeout_elapses(self, monitor, clock):
        await open_circuit(monitor)

        clock.advance(59)
        assert await monitor.is_available("beem") is False
        assert (await monitor.get_record("beem")).circuit_state == CircuitState.OPEN

        clock.advance(1)
        assert await monitor.is_available("beem") is True
        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.HALF_OPEN
        assert record.failure_count == 0
        assert record.success_count == 0

    async def test_half_open_failure_reopens_with_new_opened_at(self, monitor, clock):
        await open_circuit(monitor)
        clock.advance(60)
        await monitor.is_available("beem")
        await monitor.record_success("beem", 100)
        await monitor.record_success("beem", 100)

        clock.advance(5)
        await monitor.record_failure("beem", "HTTP 503")

        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.OPEN
        assert record.opened_at == clock.now
        assert await monitor.is_available("beem") is False

    async def test_three_half_open_successes_close_circuit(self, monitor, clock):
        await open_circuit(monitor)
        clock.advance(60)
        await monitor.is_available("beem")

        await monitor.record_success("beem", 100)
        await monitor.record_success("beem", 100)
        assert (await monitor.get_record("beem")).circuit_state == CircuitState.HALF_OPEN

        await monitor.record_success("beem", 100)
        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.CLOSED
        assert record.failure_count == 0
        assert record.success_count == 0
        assert record.opened_at is None


class TestCounters:

    async def test_rolling_counters_and_average(self, monitor):
        await monitor.record_success("termii", 100)
        await monitor.record_success("termii", 300)
        await monitor.record_failure("termii", "HTTP 500")

        record = await monitor.get_record("termii")
        assert record.total_requests == 3
        assert record.successful_requests == 2
        assert record.average_response_time_ms == pytest.approx(200.0)
        assert record.success_rate == pytest.approx(66.67, abs=0.01)
        assert await monitor.health_score("termii") == pytest.approx(61.67, abs=0.01)

    async def test_health_score_caps_by_state(self):
        open_record = ProviderHealthRecord(provider="beem", circuit_state=CircuitState.OPEN)
        half_open = ProviderHealthRecord(provider="beem", circuit_state=CircuitState.HALF_OPEN)
        degraded = ProviderHealthRecord(
            provider="beem", failure_count=3, total_requests=10, successful_requests=9
        )

        assert HealthMonitor.score_record(open_record) == 25.0
        assert HealthMonitor.score_record(half_open) == 75.0
        assert HealthMonitor.score_record(degraded) == 75.0

    async def test_health_score_floor_is_zero(self):
        record = ProviderHealthRecord(provider="beem", failure_count=30)
        assert HealthMonitor.score_record(record) == 0.0

    async def test_reset_forgets_provider(self, monitor):
        await open_circuit(monitor)
        await monitor.reset("beem")

        assert await monitor.is_available("beem") is True
        assert (await monitor.get_record("beem")).total_requests == 0

    async def test_force_open(self, monitor):
        await monitor.force_open("beem", "Known outage")

        record = await monitor.get_record("beem")
        assert record.circuit_state == CircuitState.OPEN
        assert record.last_error == "Known outage"
        assert await monitor.is_available("beem") is False

    async def test_record_expires_after_idle_ttl(self, monitor, redis_client):
        await monitor.record_failure("beem", "boom")
        ttl = await redis_client.ttl("health:beem")
        assert 0 < ttl <= 86400


class BrokenRedis:
    """Every call fails like an unreachable Redis."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("Connection refused")
        return fail


class TestFailOpen:

    async def test_unreachable_store_reports_available(self, settings, clock):
        monitor = HealthMonitor(BrokenRedis(), settings, clock=clock)

        await monitor.record_failure("beem", "boom")
        await monitor.record_success("beem", 10)

        assert await monitor.is_available("beem") is True
        assert (await monitor.get_record("beem")).circuit_state == CircuitState.CLOSED
