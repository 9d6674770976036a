"""
Pytest configuration and shared fixtures.

Redis is fakeredis, the message store is SQLite through aiosqlite, provider
adapters are in-memory doubles and outbound webhooks hit an
httpx.MockTransport.
"""
from typing import Any, Optional

import httpx
import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from notifyhub.adapters.base import ProviderAdapter, ProviderResult
from notifyhub.adapters.registry import AdapterRegistry
from notifyhub.components import build_components
from notifyhub.config import ProviderConfig, Settings, ThrottleLimit
from notifyhub.database import create_engine, create_session_factory
from notifyhub.models.base import Base
from notifyhub.models.message import Message  # noqa: F401
from notifyhub.schemas import SendRequest

WEBHOOK_SECRET = "test-webhook-secret"
WEBHOOK_URL = "https://client.example.com/hooks/notifyhub"


class FakeClock:
    """Controllable time source for circuit breaker timeouts."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeAdapter(ProviderAdapter):
    """Provider double: succeeds or fails on demand and records calls."""

    def __init__(self, provider_id: str, fail: bool = False, error: str = "Connection timed out",
                 raises: Optional[Exception] = None):
        super().__init__(provider_id)
        self.fail = fail
        self.error = error
        self.raises = raises
        self.calls: list[dict[str, Any]] = []

    async def send(self, recipient, body, subject=None, metadata=None) -> ProviderResult:
        self.calls.append({"recipient": recipient, "body": body, "subject": subject, "metadata": metadata})
        if self.raises is not None:
            raise self.raises
        if self.fail:
            return ProviderResult.failure(self.provider_id, self.error)
        return ProviderResult.ok(self.provider_id, f"{self.provider_id}-{len(self.calls)}", cost=0.02)

    async def is_healthy(self) -> bool:
        return not self.fail


class RecordingPool:
    """Stands in for the arq pool; keeps every enqueue_job call."""

    def __init__(self):
        self.jobs: list[tuple[str, tuple, dict]] = []

    async def enqueue_job(self, function: str, *args, **kwargs):
        self.jobs.append((function, args, kwargs))
        return object()

    def named(self, function: str) -> list[tuple[str, tuple, dict]]:
        return [job for job in self.jobs if job[0] == function]


class WebhookEndpoint:
    """Client webhook receiver behind httpx.MockTransport."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'notifyhub.db'}",
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        THROTTLE_DEFAULT=ThrottleLimit(max_attempts=1000, window_seconds=1),
        PROVIDERS=[
            ProviderConfig(id="beem", channel="sms", priority=90),
            ProviderConfig(id="termii", channel="sms", priority=60),
            ProviderConfig(id="sendgrid", channel="email", priority=50),
            ProviderConfig(id="mailgun", channel="email", priority=40),
        ],
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
async def session_factory(settings):
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def adapters() -> dict[str, FakeAdapter]:
    return {
        "beem": FakeAdapter("beem"),
        "termii": FakeAdapter("termii"),
        "sendgrid": FakeAdapter("sendgrid"),
        "mailgun": FakeAdapter("mailgun"),
    }


@pytest.fixture
def webhook_endpoint() -> WebhookEndpoint:
    return WebhookEndpoint()


@pytest.fixture
async def http_client(webhook_endpoint):
    client = httpx.AsyncClient(transport=httpx.MockTransport(webhook_endpoint))
    yield client
    await client.aclose()


@pytest.fixture
def pool() -> RecordingPool:
    return RecordingPool()


@pytest.fixture
def components(settings, redis_client, session_factory, http_client, pool, adapters, clock) -> dict:
    return build_components(
        settings,
        redis_client,
        session_factory,
        http_client,
        pool=pool,
        adapters=AdapterRegistry(adapters),
        clock=clock,
    )


@pytest.fixture
def add_provider(settings, components):
    """Configure another provider and register a FakeAdapter for it."""

    def add(provider_id: str, channel: str = "sms", priority: int = 10, **adapter_options) -> FakeAdapter:
        settings.PROVIDERS.append(ProviderConfig(id=provider_id, channel=channel, priority=priority))
        adapter = FakeAdapter(provider_id, **adapter_options)
        components["adapters"].register(adapter)
        return adapter

    return add


@pytest.fixture
def job_ctx(components):
    """Build an arq-style ctx for a given try number."""

    def make(job_try: int = 1) -> dict:
        return {**components, "job_try": job_try, "job_id": f"test-job-{job_try}"}

    return make


@pytest.fixture
def sms_request():
    def make(**overrides) -> SendRequest:
        fields = {"channel": "sms", "to": "+255712345678", "message": "Your code is 4821"}
        fields.update(overrides)
        return SendRequest(**fields)

    return make
