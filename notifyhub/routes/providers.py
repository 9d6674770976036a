"""
Provider API routes.

Health ranking per channel, manual circuit reset, forced failover, and the
inbound endpoint providers call with delivery events.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from notifyhub.config import CHANNELS
from notifyhub.dependencies.engine import get_components, get_health, get_queue, get_selector
from notifyhub.exceptions import InvalidChannel
from notifyhub.jobs import map_provider_status
from notifyhub.queue import JobQueue
from notifyhub.schemas import ProviderEvent
from notifyhub.services.health_monitor import HealthMonitor
from notifyhub.services.provider_selector import ProviderSelector


router = APIRouter(prefix="/api/providers", tags=["providers"])


@router.get("")
async def list_providers(
    channel: Optional[str] = None,
    country: Optional[str] = None,
    selector: ProviderSelector = Depends(get_selector),
):
    """
    Ranked providers with their circuit state and health score.

    Without a channel, every channel is listed. A country limits each list to
    the providers serving it.
    """
    channels = [channel] if channel else list(CHANNELS)
    try:
        return {
            name: [row.to_dict() for row in await selector.ranking(name, country=country)]
            for name in channels
        }
    except InvalidChannel as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/{provider}/reset")
async def reset_provider(
    provider: str,
    components: dict = Depends(get_components),
    health: HealthMonitor = Depends(get_health),
):
    """Clear a provider's health record; its circuit starts closed again."""
    if components["settings"].provider(provider) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    await health.reset(provider)
    return {"provider": provider, "circuit_state": "closed"}


@router.post("/{provider}/failover")
async def force_failover(
    provider: str,
    reason: str = "Manual failover",
    components: dict = Depends(get_components),
    health: HealthMonitor = Depends(get_health),
):
    """Open a provider's circuit now; traffic moves to the next provider until the timeout."""
    if components["settings"].provider(provider) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    await health.force_open(provider, reason)
    return {"provider": provider, "circuit_state": "open", "reason": reason}


@router.post("/{provider}/events", status_code=status.HTTP_202_ACCEPTED)
async def provider_event(
    provider: str,
    event: ProviderEvent,
    queue: JobQueue = Depends(get_queue),
):
    """
    Delivery status callback from a provider.

    The event is applied by the status update job; unknown statuses are
    rejected here.
    """
    if not event.message_id and not event.external_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="message_id or external_id is required"
        )
    if map_provider_status(event.status) is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown status: {event.status}"
        )

    data = {**event.data, "provider": provider}
    if event.error_message:
        data["error"] = event.error_message

    enqueued = await queue.status_update(event.status, event.message_id, event.external_id, data)
    if not enqueued:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not queue event")
    return {"accepted": True}
