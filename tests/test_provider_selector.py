"""
Tests for provider ranking and selection.

Tests cover:
- Score = priority + 1000 / avg response time
- Unavailable providers are skipped
- Fallback to the oldest last failure when nothing is available
- Errors for unknown or unconfigured channels
- Country routing from the recipient's calling code
"""
import pytest

from notifyhub.config import ProviderConfig, Settings
from notifyhub.exceptions import InvalidChannel, NoProviderAvailable
from notifyhub.services.health_monitor import HealthMonitor
from notifyhub.services.provider_selector import ProviderSelector, provider_score, recipient_country


@pytest.fixture
def monitor(redis_client, settings, clock) -> HealthMonitor:
    return HealthMonitor(redis_client, settings, clock=clock)


@pytest.fixture
def selector(settings, monitor) -> ProviderSelector:
    return ProviderSelector(settings, monitor)


async def open_circuit(monitor: HealthMonitor, provider: str):
    for _ in range(5):
        await monitor.record_failure(provider, "HTTP 503: Service Unavailable")


class TestScoring:

    def test_score_formula(self):
        assert provider_score(50, 1000) == pytest.approx(51.0)
        assert provider_score(80, 200) == pytest.approx(85.0)

    def test_unknown_latency_counts_as_one_second(self):
        assert provider_score(60, None) == pytest.approx(61.0)

    def test_sub_millisecond_latency_is_clamped(self):
        assert provider_score(0, 0) == pytest.approx(1000.0)

    async def test_higher_score_wins(self, redis_client, clock):
        settings = Settings(_env_file=None, PROVIDERS=[
            ProviderConfig(id="a", channel="sms", priority=50),
            ProviderConfig(id="b", channel="sms", priority=80),
        ])
        monitor = HealthMonitor(redis_client, settings, clock=clock)
        await monitor.record_success("a", 1000)
        await monitor.record_success("b", 200)

        selector = ProviderSelector(settings, monitor)
        ranking = await selector.ranking("sms")

        assert [r.id for r in ranking] == ["b", "a"]
        assert ranking[0].score == pytest.approx(85.0)
        assert ranking[1].score == pytest.approx(51.0)
        assert await selector.select("sms") == "b"

    async def test_ties_keep_configuration_order(self, redis_client, clock):
        settings = Settings(_env_file=None, PROVIDERS=[
            ProviderConfig(id="first", channel="whatsapp", priority=10),
            ProviderConfig(id="second", channel="whatsapp", priority=10),
        ])
        selector = ProviderSelector(settings, HealthMonitor(redis_client, settings, clock=clock))

        assert await selector.select("whatsapp") == "first"


class TestAvailability:

    async def test_selects_highest_priority_when_healthy(self, selector):
        assert await selector.select("sms") == "beem"

    async def test_skips_open_circuit(self, selector, monitor):
        await open_circuit(monitor, "beem")

        assert await selector.select("sms") == "termii"
        assert await selector.candidates("sms") == ["termii"]

    async def test_exclude(self, selector):
        assert await selector.select("sms", exclude=["beem"]) == "termii"

    async def test_selection_does_not_touch_health(self, selector, monitor):
        await selector.select("sms")
        record = await monitor.get_record("beem")
        assert record.total_requests == 0


class TestFallback:

    async def test_oldest_last_failure_wins_when_all_unavailable(self, selector, monitor, clock):
        await open_circuit(monitor, "termii")
        clock.advance(10)
        await open_circuit(monitor, "beem")

        assert await selector.candidates("sms") == []
        assert await selector.select("sms") == "termii"

    async def test_never_failed_provider_preferred(self, selector, monitor, redis_client):
        await open_circuit(monitor, "beem")
        await redis_client.hset("health:termii", mapping={"circuit_state": "open", "opened_at": 1e12})

        assert await selector.select("sms") == "termii"

    async def test_fallback_with_no_failures_uses_config_order(self, selector, redis_client):
        for provider in ("beem", "termii"):
            await redis_client.hset(f"health:{provider}", mapping={"circuit_state": "open", "opened_at": 1e12})

        assert await selector.select("sms") == "beem"


class TestErrors:

    async def test_unknown_channel(self, selector):
        with pytest.raises(InvalidChannel):
            await selector.select("pigeon")

    async def test_channel_without_providers(self, selector):
        with pytest.raises(NoProviderAvailable):
            await selector.select("whatsapp")

    async def test_everything_excluded(self, selector):
        with pytest.raises(NoProviderAvailable):
            await selector.select("sms", exclude=["beem", "termii"])


class TestCountryRouting:

    @pytest.fixture
    def regional(self, redis_client, clock) -> ProviderSelector:
        settings = Settings(_env_file=None, PROVIDERS=[
            ProviderConfig(id="beem", channel="sms", priority=90, countries=["TZ", "KE"]),
            ProviderConfig(id="termii", channel="sms", priority=60, countries=["NG", "GH"]),
            ProviderConfig(id="global", channel="sms", priority=10),
        ])
        return ProviderSelector(settings, HealthMonitor(redis_client, settings, clock=clock))

    @pytest.mark.parametrize("recipient,country", [
        ("+255712345678", "TZ"),
        ("+234 803 123 4567", "NG"),
        ("+14155550100", "US"),
        ("+99912345", None),
        ("0712345678", None),
        ("user@example.com", None),
    ])
    def test_recipient_country(self, recipient, country):
        assert recipient_country(recipient) == country

    async def test_tanzanian_number_goes_to_beem(self, regional):
        assert await regional.select("sms", country="TZ") == "beem"
        assert await regional.candidates("sms", country="TZ") == ["beem", "global"]

    async def test_nigerian_number_goes_to_termii(self, regional):
        assert await regional.select("sms", country="NG") == "termii"
        assert await regional.candidates("sms", country="NG") == ["termii", "global"]

    async def test_unknown_country_uses_every_provider(self, regional):
        assert await regional.candidates("sms") == ["beem", "termii", "global"]

    async def test_uncovered_country_falls_back_to_all(self, redis_client, clock):
        settings = Settings(_env_file=None, PROVIDERS=[
            ProviderConfig(id="beem", channel="sms", priority=90, countries=["TZ"]),
        ])
        selector = ProviderSelector(settings, HealthMonitor(redis_client, settings, clock=clock))

        assert await selector.select("sms", country="NG") == "beem"

    def test_is_configured_checks_channel(self, selector):
        assert selector.is_configured("beem", "sms") is True
        assert selector.is_configured("sendgrid", "sms") is False
        assert selector.is_configured("nobody", "sms") is False
