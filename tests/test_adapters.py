"""
Tests for the provider adapter contract.

Tests cover:
- Error classification
- Generic HTTP adapter results for success, HTTP errors and transport errors
- Adapter registry
"""
import httpx
import pytest

from notifyhub.adapters.base import ErrorKind, ProviderResult, classify_error
from notifyhub.adapters.http import HttpProviderAdapter
from notifyhub.adapters.registry import AdapterRegistry
from notifyhub.config import ProviderConfig, Settings


@pytest.mark.parametrize("error,kind", [
    ("Connection timed out", ErrorKind.NETWORK),
    ("HTTP 503: Service Unavailable", ErrorKind.NETWORK),
    ("HTTP 401: Unauthorized", ErrorKind.AUTH),
    ("Invalid API key", ErrorKind.AUTH),
    ("HTTP 429: Too Many Requests", ErrorKind.RATE_LIMIT),
    ("Rate limit exceeded, retry later", ErrorKind.RATE_LIMIT),
    ("Invalid phone number format", ErrorKind.VALIDATION),
    ("Something odd happened", ErrorKind.UNKNOWN),
    (None, ErrorKind.UNKNOWN),
])
def test_classify_error(error, kind):
    assert classify_error(error) == kind


def test_failure_result_is_classified():
    result = ProviderResult.failure("beem", "HTTP 429: Too Many Requests")
    assert result.success is False
    assert result.error_kind == ErrorKind.RATE_LIMIT


CONFIG = ProviderConfig(id="beem", channel="sms", priority=90, endpoint="https://beem.example.com/v1/",
                        api_key="secret-key", sender="NotifyHub")


def adapter_with(handler) -> HttpProviderAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProviderAdapter(CONFIG, client=client)


class TestHttpAdapter:

    async def test_success(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "bm-123", "cost": 0.015})

        result = await adapter_with(handler).send("+255712345678", "hello", metadata={"a": 1})

        assert result.success is True
        assert result.provider_message_id == "bm-123"
        assert result.cost == pytest.approx(0.015)
        assert str(seen[0].url) == "https://beem.example.com/v1/messages"
        assert seen[0].headers["Authorization"] == "Bearer secret-key"

    async def test_http_error(self):
        adapter = adapter_with(lambda request: httpx.Response(401, text="bad credentials"))

        result = await adapter.send("+255712345678", "hello")

        assert result.success is False
        assert result.error.startswith("HTTP 401")
        assert result.error_kind == ErrorKind.AUTH

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await adapter_with(handler).send("+255712345678", "hello")

        assert result.success is False
        assert result.error_kind == ErrorKind.NETWORK

    async def test_missing_message_id(self):
        result = await adapter_with(lambda request: httpx.Response(200, json={})).send("+255712345678", "hello")
        assert result.success is False

    async def test_is_healthy(self):
        assert await adapter_with(lambda request: httpx.Response(200)).is_healthy() is True
        assert await adapter_with(lambda request: httpx.Response(500)).is_healthy() is False

    def test_requires_endpoint(self):
        with pytest.raises(ValueError):
            HttpProviderAdapter(ProviderConfig(id="x", channel="sms"))


class TestRegistry:

    def test_from_settings_skips_providers_without_endpoint(self):
        settings = Settings(_env_file=None, PROVIDERS=[
            CONFIG,
            ProviderConfig(id="termii", channel="sms", priority=60),
        ])

        registry = AdapterRegistry.from_settings(settings)

        assert "beem" in registry
        assert "termii" not in registry
        with pytest.raises(LookupError):
            registry.get("termii")
