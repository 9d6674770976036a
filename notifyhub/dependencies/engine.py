"""
Engine dependencies for FastAPI routes.

Components are built once in the app lifespan and kept on app.state.
"""
from fastapi import HTTPException, Request

from notifyhub.queue import JobQueue
from notifyhub.services.dispatcher import DispatchOrchestrator
from notifyhub.services.health_monitor import HealthMonitor
from notifyhub.services.message_store import MessageStore
from notifyhub.services.provider_selector import ProviderSelector


def get_components(request: Request) -> dict:
    return request.app.state.components


def get_orchestrator(request: Request) -> DispatchOrchestrator:
    return get_components(request)["orchestrator"]


def get_store(request: Request) -> MessageStore:
    return get_components(request)["store"]


def get_health(request: Request) -> HealthMonitor:
    return get_components(request)["health"]


def get_selector(request: Request) -> ProviderSelector:
    return get_components(request)["selector"]


def get_queue(request: Request) -> JobQueue:
    """
    Job queue handle.

    Raises 503 if the API was started without a queue connection.
    """
    queue = get_components(request)["queue"]
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue is not configured")
    return queue
