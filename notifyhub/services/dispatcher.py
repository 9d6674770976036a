"""
Dispatch Orchestrator.

The synchronous "send now" path: persist, select a provider, invoke its
adapter, record the outcome. Used directly by the API (send) and by the job
pipeline (dispatch on an existing message). Retry and failover policy belong
to the job pipeline; a provider failure here is recorded and raised.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from notifyhub.adapters.base import ProviderResult
from notifyhub.adapters.registry import AdapterRegistry
from notifyhub.config import CHANNELS
from notifyhub.exceptions import (
    InvalidChannel,
    InvalidTransition,
    MessageNotFound,
    NoProviderAvailable,
    ProviderSendError,
)
from notifyhub.logging_config import get_logger
from notifyhub.metrics import track_dispatch, track_message_failed, track_provider_failure
from notifyhub.models.message import Channel, Message, MessageStatus
from notifyhub.queue import JobQueue
from notifyhub.schemas import DispatchResult, SendRequest
from notifyhub.services.health_monitor import HealthMonitor
from notifyhub.services.message_store import MessageStore, utcnow
from notifyhub.services.provider_selector import ProviderSelector, recipient_country

logger = get_logger(component="dispatcher")

# Metadata key holding a caller-pinned provider for queued sends
REQUESTED_PROVIDER_KEY = "requested_provider"
# Metadata key holding the recipient country given by the caller
COUNTRY_KEY = "country"


@dataclass(frozen=True)
class DispatchOutcome:
    """A successful provider hand-off."""
    message_id: str
    provider: str
    external_id: Optional[str]
    response_time_ms: int
    cost: Optional[float] = None
    status: str = MessageStatus.SENT.value


def validate_channel(channel: str) -> Channel:
    """Reject unknown channels; a caller error, never retried."""
    if channel not in CHANNELS:
        raise InvalidChannel(channel)
    return Channel(channel)


def message_country(message: Message) -> Optional[str]:
    """Recipient country: the caller's value, else derived from the phone number."""
    country = (message.metadata_json or {}).get(COUNTRY_KEY)
    if country:
        return country
    if _value(message.channel) in (Channel.SMS.value, Channel.WHATSAPP.value):
        return recipient_country(message.recipient)
    return None


class DispatchOrchestrator:
    """Coordinates selection, adapter invocation and recording for one send."""

    def __init__(
        self,
        store: MessageStore,
        selector: ProviderSelector,
        health: HealthMonitor,
        adapters: AdapterRegistry,
        queue: Optional[JobQueue] = None,
    ):
        self.store = store
        self.selector = selector
        self.health = health
        self.adapters = adapters
        self.queue = queue

    async def create(self, request: SendRequest, status: MessageStatus = MessageStatus.QUEUED) -> Message:
        """Validate and persist a new message."""
        channel = validate_channel(request.channel)
        metadata = dict(request.metadata)
        if request.provider:
            metadata[REQUESTED_PROVIDER_KEY] = request.provider
        if request.country:
            metadata[COUNTRY_KEY] = request.country.upper()

        message = Message(
            channel=channel,
            recipient=request.to,
            body=request.message,
            subject=request.subject if channel == Channel.EMAIL else None,
            priority=request.priority,
            status=status,
            webhook_url=request.webhook_url,
            metadata_json=metadata,
        )
        message = await self.store.create(message)
        logger.info("message_created", message_id=message.id, channel=channel.value, status=status.value)
        return message

    async def choose_provider(
        self, channel: str, pinned: Optional[str] = None, exclude=(), country: Optional[str] = None
    ) -> str:
        """
        Use the pinned provider when it serves the channel and is available,
        otherwise ask the selector.
        """
        if pinned and pinned not in exclude:
            if not self.selector.is_configured(pinned, channel):
                logger.warning("pinned_provider_not_configured", provider=pinned, channel=channel)
            elif await self.selector.is_available(pinned):
                return pinned
            else:
                logger.warning("pinned_provider_unavailable", provider=pinned, channel=channel)
        return await self.selector.select(channel, exclude=exclude, country=country)

    async def attempt(self, message: Message, provider: str) -> ProviderResult:
        """
        Invoke one provider for one message and record its health.

        Adapter exceptions are converted to a failed ProviderResult here so
        nothing past this boundary needs to catch them.

        Raises:
            ProviderSendError: The provider did not accept the message
        """
        log = logger.bind(message_id=message.id, provider=provider, channel=_value(message.channel))
        start = time.monotonic()
        try:
            adapter = self.adapters.get(provider)
            result = await adapter.send(
                message.recipient,
                message.body,
                message.subject,
                dict(message.metadata_json or {}),
            )
        except Exception as e:
            log.error("adapter_exception", error=str(e), exc_info=True)
            result = ProviderResult.failure(provider, f"Adapter error: {e}")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = result.with_response_time(elapsed_ms)

        if result.success:
            await self.health.record_success(provider, elapsed_ms)
            track_dispatch(_value(message.channel), provider, elapsed_ms)
            log.info("provider_accepted", external_id=result.provider_message_id, response_time_ms=elapsed_ms)
            return result

        error = result.error or "Provider returned no error detail"
        await self.health.record_failure(provider, error)
        track_provider_failure(_value(message.channel), provider, result.error_kind.value)
        log.warning("provider_failed", error=error, error_kind=result.error_kind.value, response_time_ms=elapsed_ms)
        await self.store.update(message.id, provider=provider, error_message=error, error_kind=result.error_kind.value)
        raise ProviderSendError(provider, error, result.error_kind.value, elapsed_ms)

    async def mark_sent(self, message: Message, result: ProviderResult) -> bool:
        applied = await self.store.transition(
            message.id,
            MessageStatus.SENT,
            provider=result.provider,
            external_id=result.provider_message_id,
            cost=result.cost,
            sent_at=utcnow(),
            error_message=None,
            error_kind=None,
        )
        if not applied:
            logger.warning("sent_status_not_applied", message_id=message.id, provider=result.provider)
        return applied

    async def fail(self, message: Message, error: str, attempts: int = 1) -> bool:
        """
        Mark a message failed and announce it with the `failed` webhook.

        Returns False if the status table refused the transition (the row
        is already terminal); nothing is emitted then.
        """
        error = (error or "Unknown error")[:2000]
        applied = await self.store.transition(message.id, MessageStatus.FAILED, failed_at=utcnow(), error_message=error)
        if not applied:
            return False

        track_message_failed(_value(message.channel))
        logger.error("message_failed", message_id=message.id, attempts=attempts, error=error)

        if message.webhook_url and self.queue is not None:
            current = await self.store.find(message.id)
            await self.queue.webhook(message.id, MessageStatus.FAILED.value, {
                "error": error,
                "retry_count": current.retry_count if current else message.retry_count,
                "attempts": attempts,
            })
        return True

    async def dispatch(self, message: Message, provider: Optional[str] = None) -> DispatchOutcome:
        """
        Send an existing message through one provider.

        Args:
            message: Persisted message (queued or sending)
            provider: Provider to pin; falls back to the message's requested
                provider, then to the selector

        Raises:
            InvalidChannel, NoProviderAvailable, ProviderSendError
        """
        channel = validate_channel(_value(message.channel))
        pinned = provider or (message.metadata_json or {}).get(REQUESTED_PROVIDER_KEY)
        chosen = await self.choose_provider(channel.value, pinned, country=message_country(message))

        result = await self.attempt(message, chosen)
        status = MessageStatus.SENT.value
        if not await self.mark_sent(message, result):
            current = await self.store.find(message.id)
            status = _value(current.status) if current else status

        return DispatchOutcome(
            message_id=message.id,
            provider=chosen,
            external_id=result.provider_message_id,
            response_time_ms=result.response_time_ms,
            cost=result.cost,
            status=status,
        )

    async def send(self, request: SendRequest) -> DispatchResult:
        """
        Synchronous send: persist as queued, dispatch, report.

        A provider failure (or no provider at all) marks the message failed
        and propagates to the caller; the row can be re-queued with retry().
        """
        message = await self.create(request)
        try:
            outcome = await self.dispatch(message, request.provider)
        except ProviderSendError as e:
            await self.fail(message, e.error)
            raise
        except NoProviderAvailable as e:
            await self.fail(message, str(e))
            raise

        if outcome.status == MessageStatus.SENT.value and message.webhook_url and self.queue is not None:
            await self.queue.webhook(message.id, "sent", {})

        return DispatchResult(message_id=message.id, status=outcome.status, provider=outcome.provider)

    async def submit(self, request: SendRequest, failover: bool = True) -> DispatchResult:
        """Persist as queued and hand the send to the job pipeline."""
        if self.queue is None:
            raise RuntimeError("submit() needs a job queue")

        message = await self.create(request)
        enqueued = await self.queue.dispatch(message.id, request.priority, failover=failover)
        if not enqueued:
            # Leave it queued with a note; a later retry can pick it up
            await self.store.update(message.id, error_message="Failed to enqueue dispatch job")

        return DispatchResult(message_id=message.id, status=MessageStatus.QUEUED.value, provider=None)

    async def send_bulk(self, requests: list[SendRequest], failover: bool = True) -> dict:
        """Submit many sends; one bad item does not stop the batch."""
        batch_id = str(uuid.uuid4())
        results = []
        for request in requests:
            request = request.model_copy(update={"metadata": {**request.metadata, "batch_id": batch_id}})
            try:
                result = await self.submit(request, failover=failover)
                results.append({"success": True, "message_id": result.message_id, "status": result.status})
            except InvalidChannel as e:
                results.append({"success": False, "error": str(e), "to": request.to})

        successful = sum(1 for r in results if r["success"])
        logger.info("bulk_submitted", batch_id=batch_id, total=len(results), successful=successful)
        return {
            "batch_id": batch_id,
            "total": len(results),
            "results": results,
            "summary": {"successful": successful, "failed": len(results) - successful},
        }

    async def cancel(self, message_id: str) -> Message:
        """
        Cancel a message that has not been handed to a provider yet.

        In-flight jobs notice the cancelled status at their next check.
        """
        message = await self.store.find(message_id)
        if message is None:
            raise MessageNotFound(message_id)

        if not await self.store.transition(message_id, MessageStatus.CANCELLED, cancelled_at=utcnow()):
            current = await self.store.find(message_id)
            raise InvalidTransition(message_id, _value(current.status), MessageStatus.CANCELLED.value)

        logger.info("message_cancelled", message_id=message_id)
        return await self.store.find(message_id)

    async def retry(self, message_id: str, failover: bool = True) -> Message:
        """Explicit retry of a failed message: back to queued and re-enqueued."""
        message = await self.store.find(message_id)
        if message is None:
            raise MessageNotFound(message_id)

        if not await self.store.transition(message_id, MessageStatus.QUEUED, failed_at=None):
            raise InvalidTransition(message_id, _value(message.status), MessageStatus.QUEUED.value)

        await self.store.bump_retry_count(message_id)
        if self.queue is not None:
            await self.queue.dispatch(message_id, message.priority, failover=failover)

        logger.info("message_retry_requested", message_id=message_id)
        return await self.store.find(message_id)


def _value(value) -> str:
    return getattr(value, "value", value)
