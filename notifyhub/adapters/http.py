"""
Generic JSON-over-HTTP provider adapter.

Posts {recipient, body, subject, sender, metadata} to a configured endpoint
and expects {"id": ...} back. Vendor-specific adapters replace this when a
provider's API needs its own wire format.
"""
import time
from typing import Any, Optional

import httpx

from notifyhub.adapters.base import ProviderAdapter, ProviderResult
from notifyhub.config import ProviderConfig
from notifyhub.logging_config import get_logger


class HttpProviderAdapter(ProviderAdapter):
    """Adapter for providers exposing a simple JSON send endpoint."""

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config.id)
        if not config.endpoint:
            raise ValueError(f"Provider {config.id} has no endpoint configured")
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.log = get_logger(provider=config.id, channel=config.channel)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    def _headers(self) -> dict:
        headers = {"User-Agent": "NotifyHub/1.0"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def send(
        self,
        recipient: str,
        body: str,
        subject: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProviderResult:
        payload = {
            "recipient": recipient,
            "body": body,
            "subject": subject,
            "sender": self.config.sender,
            "metadata": metadata or {},
        }
        start = time.monotonic()
        try:
            response = await self._get_client().post(
                f"{self.config.endpoint.rstrip('/')}/messages",
                json=payload,
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            elapsed = int((time.monotonic() - start) * 1000)
            return ProviderResult.failure(self.provider_id, f"Connection error: {e}", elapsed)

        elapsed = int((time.monotonic() - start) * 1000)

        if response.status_code < 200 or response.status_code >= 300:
            return ProviderResult.failure(
                self.provider_id,
                f"HTTP {response.status_code}: {response.text[:200]}",
                elapsed,
            )

        try:
            data = response.json()
        except ValueError:
            return ProviderResult.failure(self.provider_id, "Invalid JSON in provider response", elapsed)

        provider_message_id = data.get("id") or data.get("message_id")
        if not provider_message_id:
            return ProviderResult.failure(self.provider_id, "Provider response missing message id", elapsed)

        return ProviderResult.ok(
            self.provider_id,
            str(provider_message_id),
            cost=data.get("cost"),
            response_time_ms=elapsed,
        )

    async def is_healthy(self) -> bool:
        try:
            response = await self._get_client().get(
                f"{self.config.endpoint.rstrip('/')}/health",
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            self.log.warning("provider_health_check_failed", error=str(e))
            return False
        return 200 <= response.status_code < 300

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
