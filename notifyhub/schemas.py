"""
Request and response models shared by the routes and the orchestrator.
"""
from typing import Any, Optional

from pydantic import BaseModel, Field

from notifyhub.models.message import Message, MessagePriority


class SendRequest(BaseModel):
    """A request to send one notification."""
    channel: str
    to: str = Field(min_length=1)
    message: str = Field(min_length=1)
    subject: Optional[str] = None
    provider: Optional[str] = None
    # ISO 3166 alpha-2; derived from the phone number when omitted
    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    webhook_url: Optional[str] = None
    priority: MessagePriority = MessagePriority.NORMAL
    metadata: dict[str, Any] = Field(default_factory=dict)


class BulkSendRequest(BaseModel):
    messages: list[SendRequest] = Field(min_length=1, max_length=1000)
    failover: bool = True


class DispatchResult(BaseModel):
    """Outcome returned to the caller of send/submit."""
    message_id: str
    status: str
    provider: Optional[str] = None


class ProviderEvent(BaseModel):
    """A delivery event reported by a provider callback."""
    status: str
    message_id: Optional[str] = None
    external_id: Optional[str] = None
    error_message: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    """Response model for a message."""
    id: str
    channel: str
    recipient: str
    status: str
    provider: str | None = None
    external_id: str | None = None
    retry_count: int = 0
    error_message: str | None = None
    webhook_delivered: bool = False
    webhook_attempts: int = 0
    created_at: str | None = None
    sent_at: str | None = None
    delivered_at: str | None = None
    failed_at: str | None = None
    cancelled_at: str | None = None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def message_to_response(message: Message) -> MessageResponse:
    """Convert Message model to MessageResponse."""
    return MessageResponse(
        id=message.id,
        channel=getattr(message.channel, "value", message.channel),
        recipient=message.recipient,
        status=getattr(message.status, "value", message.status),
        provider=message.provider,
        external_id=message.external_id,
        retry_count=message.retry_count,
        error_message=message.error_message,
        webhook_delivered=message.webhook_delivered,
        webhook_attempts=message.webhook_attempts,
        created_at=_iso(message.created_at),
        sent_at=_iso(message.sent_at),
        delivered_at=_iso(message.delivered_at),
        failed_at=_iso(message.failed_at),
        cancelled_at=_iso(message.cancelled_at),
    )
