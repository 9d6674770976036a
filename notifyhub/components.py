"""
Wiring of the engine's components.

Both the API process and the arq workers build the same set of objects from
one Settings instance and a handful of connections owned by the process.
"""
import time
from typing import Callable, Optional

import httpx
import redis.asyncio as redis
from arq import ArqRedis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.adapters.registry import AdapterRegistry
from notifyhub.config import Settings
from notifyhub.queue import JobQueue
from notifyhub.services.dispatcher import DispatchOrchestrator
from notifyhub.services.health_monitor import HealthMonitor
from notifyhub.services.message_store import SqlMessageStore
from notifyhub.services.provider_selector import ProviderSelector
from notifyhub.services.throttle import ThrottleGuard
from notifyhub.services.webhook_service import WebhookDeliverer


def create_redis(settings: Settings) -> redis.Redis:
    """Redis client for health and throttle state; every call is timeout-bounded."""
    return redis.from_url(
        settings.REDIS_URL,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_SECONDS,
    )


def build_components(
    settings: Settings,
    redis_client: redis.Redis,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    pool: Optional[ArqRedis] = None,
    adapters: Optional[AdapterRegistry] = None,
    clock: Optional[Callable[[], float]] = None,
) -> dict:
    """
    Build the component graph.

    Returns a dict suitable for an arq ctx or FastAPI app.state.
    """
    health = HealthMonitor(redis_client, settings, clock=clock or time.time)
    store = SqlMessageStore(session_factory)
    selector = ProviderSelector(settings, health)
    throttle = ThrottleGuard(redis_client, settings)
    adapters = adapters if adapters is not None else AdapterRegistry.from_settings(settings, client=http_client)
    queue = JobQueue(pool) if pool is not None else None

    return {
        "settings": settings,
        "store": store,
        "health": health,
        "selector": selector,
        "throttle": throttle,
        "adapters": adapters,
        "queue": queue,
        "orchestrator": DispatchOrchestrator(store, selector, health, adapters, queue),
        "webhooks": WebhookDeliverer(http_client, settings, store),
    }
