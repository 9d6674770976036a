"""
Adapter registry: provider id -> ProviderAdapter.
"""
from typing import Optional

import httpx

from notifyhub.adapters.base import ProviderAdapter
from notifyhub.adapters.http import HttpProviderAdapter
from notifyhub.config import Settings


class AdapterRegistry:
    """Holds one adapter instance per configured provider."""

    def __init__(self, adapters: Optional[dict[str, ProviderAdapter]] = None):
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "AdapterRegistry":
        """Create HTTP adapters for every configured provider with an endpoint."""
        registry = cls()
        for provider in settings.PROVIDERS:
            if provider.endpoint:
                registry.register(HttpProviderAdapter(provider, client=client))
        return registry

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.provider_id] = adapter

    def get(self, provider_id: str) -> ProviderAdapter:
        try:
            return self._adapters[provider_id]
        except KeyError:
            raise LookupError(f"No adapter registered for provider: {provider_id}") from None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
