"""
Provider Selector.

Ranks the providers configured for a channel and picks one:

    score = priority + 1000 / max(average_response_time_ms, 1)

Priority dominates; latency only separates providers of similar priority.
Unavailable providers (open circuit) are skipped. If every provider is
unavailable the one whose last failure is oldest is used anyway, so a fully
degraded channel never locks out permanently.

Providers can be limited to a set of countries; when the recipient's country
is known only providers serving it are ranked.
"""
from dataclasses import dataclass
from typing import Iterable, Optional

from notifyhub.config import CHANNELS, ProviderConfig, Settings
from notifyhub.exceptions import InvalidChannel, NoProviderAvailable
from notifyhub.logging_config import get_logger
from notifyhub.models.health import ProviderHealthRecord
from notifyhub.services.health_monitor import HealthMonitor

logger = get_logger(component="provider_selector")

# Assumed latency for providers with no successful send yet
DEFAULT_RESPONSE_TIME_MS = 1000.0


@dataclass
class RankedProvider:
    """A provider with the data used to rank it."""
    config: ProviderConfig
    record: ProviderHealthRecord
    available: bool
    score: float
    order: int

    @property
    def id(self) -> str:
        return self.config.id

    def to_dict(self) -> dict:
        return {
            "provider": self.config.id,
            "channel": self.config.channel,
            "priority": self.config.priority,
            "countries": self.config.countries,
            "available": self.available,
            "score": round(self.score, 2),
            "health_score": HealthMonitor.score_record(self.record),
            **{k: v for k, v in self.record.to_dict().items() if k != "provider"},
        }


def provider_score(priority: int, average_response_time_ms: Optional[float]) -> float:
    response_time = DEFAULT_RESPONSE_TIME_MS if average_response_time_ms is None else average_response_time_ms
    return priority + 1000.0 / max(response_time, 1.0)


# E.164 country calling codes for the regions the SMS aggregators cover
CALLING_CODES = {
    "1": "US",
    "27": "ZA",
    "44": "GB",
    "233": "GH",
    "234": "NG",
    "250": "RW",
    "254": "KE",
    "255": "TZ",
    "256": "UG",
    "260": "ZM",
    "265": "MW",
}


def recipient_country(recipient: str) -> Optional[str]:
    """Country of an international phone number (`+255...`), or None."""
    if not recipient or not recipient.startswith("+"):
        return None
    digits = "".join(ch for ch in recipient[1:] if ch.isdigit())
    # Calling codes are prefix-free
    for length in (3, 2, 1):
        country = CALLING_CODES.get(digits[:length])
        if country:
            return country
    return None


class ProviderSelector:
    """Chooses the provider for a channel from health and configuration."""

    def __init__(self, settings: Settings, health: HealthMonitor):
        self.settings = settings
        self.health = health

    def configured(self, channel: str) -> list[ProviderConfig]:
        if channel not in CHANNELS:
            raise InvalidChannel(channel)
        return self.settings.providers_for(channel)

    def serves(self, config: ProviderConfig, country: Optional[str]) -> bool:
        if not country or not config.countries:
            return True
        return country.upper() in {c.upper() for c in config.countries}

    def routable(self, channel: str, country: Optional[str] = None) -> list[ProviderConfig]:
        """
        Providers for a channel that deliver to `country`.

        With no provider covering the country, every configured provider is
        returned and a warning logged.
        """
        configured = self.configured(channel)
        serving = [config for config in configured if self.serves(config, country)]
        if not serving and configured:
            logger.warning("no_provider_for_country", channel=channel, country=country)
            return configured
        return serving

    def is_configured(self, provider_id: str, channel: str) -> bool:
        """Whether an enabled provider with this id is configured for the channel."""
        return any(config.id == provider_id for config in self.configured(channel))

    async def is_available(self, provider_id: str) -> bool:
        return await self.health.is_available(provider_id)

    async def ranking(
        self, channel: str, exclude: Iterable[str] = (), country: Optional[str] = None
    ) -> list[RankedProvider]:
        """
        Score every configured provider for a channel (and country, if known).

        Available providers come first, best score first; ties keep
        configuration order.
        """
        excluded = set(exclude)
        ranked = []
        for order, config in enumerate(self.routable(channel, country)):
            if config.id in excluded:
                continue
            available = await self.health.is_available(config.id)
            record = await self.health.get_record(config.id)
            ranked.append(RankedProvider(
                config=config,
                record=record,
                available=available,
                score=provider_score(config.priority, record.average_response_time_ms),
                order=order,
            ))
        ranked.sort(key=lambda r: (not r.available, -r.score, r.order))
        return ranked

    async def candidates(
        self, channel: str, exclude: Iterable[str] = (), country: Optional[str] = None
    ) -> list[str]:
        """Available providers for a channel, best first."""
        return [r.id for r in await self.ranking(channel, exclude, country) if r.available]

    async def select(self, channel: str, exclude: Iterable[str] = (), country: Optional[str] = None) -> str:
        """
        Pick the provider to use for the next send on `channel`.

        Raises:
            InvalidChannel: Unknown channel
            NoProviderAvailable: The channel has no (remaining) providers
        """
        ranked = await self.ranking(channel, exclude, country)
        if not ranked:
            raise NoProviderAvailable(channel)

        best = ranked[0]
        if best.available:
            return best.id

        fallback = self._fallback(ranked)
        logger.warning(
            "all_providers_unavailable",
            channel=channel,
            fallback=fallback.id,
            last_failure=fallback.record.last_failure,
        )
        return fallback.id

    @staticmethod
    def _fallback(ranked: list[RankedProvider]) -> RankedProvider:
        """Never-failed provider first (config order), else the oldest last failure."""
        never_failed = [r for r in ranked if r.record.last_failure is None]
        if never_failed:
            return min(never_failed, key=lambda r: r.order)
        return min(ranked, key=lambda r: (r.record.last_failure, r.order))
