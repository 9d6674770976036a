"""
Message API routes.

Queue a send, send synchronously, send in bulk, inspect, cancel and retry.
"""
from fastapi import APIRouter, Depends, HTTPException, status

from notifyhub.dependencies.engine import get_orchestrator, get_queue, get_store
from notifyhub.exceptions import (
    InvalidChannel,
    InvalidTransition,
    MessageNotFound,
    NoProviderAvailable,
    ProviderSendError,
)
from notifyhub.queue import JobQueue
from notifyhub.schemas import BulkSendRequest, DispatchResult, MessageResponse, SendRequest, message_to_response
from notifyhub.services.dispatcher import DispatchOrchestrator
from notifyhub.services.message_store import MessageStore


router = APIRouter(prefix="/api/messages", tags=["messages"])


@router.post("", response_model=DispatchResult, status_code=status.HTTP_202_ACCEPTED)
async def queue_message(
    request: SendRequest,
    failover: bool = True,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    queue: JobQueue = Depends(get_queue),
):
    """
    Queue a message for background dispatch.

    With failover (default) the job tries every healthy provider for the
    channel before counting an attempt as failed.
    """
    try:
        return await orchestrator.submit(request, failover=failover)
    except InvalidChannel as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/send", response_model=DispatchResult)
async def send_message(
    request: SendRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Send a message now through a single provider and report the outcome."""
    try:
        return await orchestrator.send(request)
    except InvalidChannel as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except NoProviderAvailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ProviderSendError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"provider": e.provider, "error": e.error, "error_kind": e.error_kind},
        )


@router.post("/bulk", status_code=status.HTTP_202_ACCEPTED)
async def send_bulk(
    request: BulkSendRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    queue: JobQueue = Depends(get_queue),
):
    """Queue many messages under one batch id; invalid items are reported, not fatal."""
    return await orchestrator.send_bulk(request.messages, failover=request.failover)


@router.get("/{message_id}", response_model=MessageResponse)
async def get_message(
    message_id: str,
    store: MessageStore = Depends(get_store),
):
    """Get the latest known state of a message."""
    message = await store.find(message_id)
    if not message:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found"
        )
    return message_to_response(message)


@router.post("/{message_id}/cancel", response_model=MessageResponse)
async def cancel_message(
    message_id: str,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or queued message."""
    try:
        message = await orchestrator.cancel(message_id)
    except MessageNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return message_to_response(message)


@router.post("/{message_id}/retry", response_model=MessageResponse)
async def retry_message(
    message_id: str,
    failover: bool = True,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    queue: JobQueue = Depends(get_queue),
):
    """Re-queue a failed message."""
    try:
        message = await orchestrator.retry(message_id, failover=failover)
    except MessageNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return message_to_response(message)
