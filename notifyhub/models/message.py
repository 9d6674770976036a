"""
Message model and its status state machine.

A Message is one notification attempt. It is owned by the dispatch
orchestrator and the job pipeline, mutated only through the transitions in
ALLOWED_TRANSITIONS, and never deleted.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import JSON, Boolean, Float, Integer, String, Text, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from notifyhub.models.base import Base, TimestampMixin


class Channel(str, enum.Enum):
    """Delivery channel enum."""
    SMS = "sms"
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class MessageStatus(str, enum.Enum):
    """Message status enum."""
    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessagePriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({
        MessageStatus.QUEUED, MessageStatus.SENDING, MessageStatus.SENT,
        MessageStatus.FAILED, MessageStatus.CANCELLED,
    }),
    MessageStatus.QUEUED: frozenset({
        MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED,
    }),
    MessageStatus.SENDING: frozenset({MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.FAILED}),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED, MessageStatus.FAILED}),
    MessageStatus.DELIVERED: frozenset(),
    # Explicit retry only
    MessageStatus.FAILED: frozenset({MessageStatus.QUEUED, MessageStatus.SENDING}),
    MessageStatus.CANCELLED: frozenset(),
}

# Statuses from which a dispatch job may still make an attempt
DISPATCHABLE_STATUSES = frozenset({
    MessageStatus.PENDING, MessageStatus.QUEUED, MessageStatus.SENDING, MessageStatus.FAILED,
})


def can_transition(current: MessageStatus | str, target: MessageStatus | str) -> bool:
    """Check a status change against the transition table."""
    return MessageStatus(target) in ALLOWED_TRANSITIONS[MessageStatus(current)]


def sources_for(target: MessageStatus | str) -> list[MessageStatus]:
    """All statuses from which `target` may be reached."""
    target = MessageStatus(target)
    return [source for source, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class Message(Base, TimestampMixin):
    """
    A single notification attempt.

    Webhook delivery progress is tracked on the row itself (webhook_*
    columns) and never influences `status`.
    """
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    channel: Mapped[Channel] = mapped_column(
        SQLEnum(Channel, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True
    )
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str | None] = mapped_column(String(998), nullable=True)
    priority: Mapped[MessagePriority] = mapped_column(
        SQLEnum(MessagePriority, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=MessagePriority.NORMAL
    )
    status: Mapped[MessageStatus] = mapped_column(
        SQLEnum(MessageStatus, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=MessageStatus.PENDING,
        index=True
    )

    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)

    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    webhook_delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    webhook_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Message(id={self.id}, channel={self.channel}, status={self.status})>"
