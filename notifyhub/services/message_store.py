"""
Message store.

Persistence for Message rows. Status changes go through transition(), which
applies the check-then-write as a single conditional UPDATE so a retrying
job and a provider status callback racing on the same message cannot
regress it.
"""
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.logging_config import get_logger
from notifyhub.metrics import track_transition_rejected
from notifyhub.models.message import Message, MessageStatus, can_transition, sources_for

logger = get_logger(component="message_store")

# Columns that only move through dedicated methods
_GUARDED_FIELDS = {"id", "status", "retry_count"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore(Protocol):
    """Persistence contract used by the orchestrator and the job pipeline."""

    async def create(self, message: Message) -> Message: ...

    async def update(self, message_id: str, **fields: Any) -> Optional[Message]: ...

    async def find(self, message_id: str) -> Optional[Message]: ...

    async def find_by_external_id(self, external_id: str) -> Optional[Message]: ...

    async def transition(self, message_id: str, target: MessageStatus, **fields: Any) -> bool: ...

    async def bump_retry_count(self, message_id: str) -> int: ...

    async def merge_metadata(self, message_id: str, extra: dict) -> None: ...


class SqlMessageStore:
    """SQLAlchemy implementation of the message store."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(self, message: Message) -> Message:
        """
        Persist a new message.

        Args:
            message: Unsaved Message instance

        Returns:
            The refreshed Message with its generated id
        """
        async with self.session_factory() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
            return message

    async def find(self, message_id: str) -> Optional[Message]:
        """Get message by ID."""
        async with self.session_factory() as session:
            return await session.get(Message, message_id)

    async def find_by_external_id(self, external_id: str) -> Optional[Message]:
        """Get message by the provider-assigned id."""
        async with self.session_factory() as session:
            stmt = select(Message).where(Message.external_id == external_id)
            result = await session.execute(stmt)
            return result.scalars().first()

    async def update(self, message_id: str, **fields: Any) -> Optional[Message]:
        """
        Update non-status fields of a message.

        Raises:
            ValueError: If a guarded field (status, retry_count) is passed
        """
        guarded = _GUARDED_FIELDS.intersection(fields)
        if guarded:
            raise ValueError(f"Use transition()/bump_retry_count() for: {', '.join(sorted(guarded))}")

        async with self.session_factory() as session:
            message = await session.get(Message, message_id)
            if not message:
                return None
            for key, value in fields.items():
                setattr(message, key, value)
            await session.commit()
            await session.refresh(message)
            return message

    async def transition(self, message_id: str, target: MessageStatus, **fields: Any) -> bool:
        """
        Move a message to `target` if the transition table allows it.

        Any extra column values are written in the same statement.

        Returns:
            True if the row was updated, False if the message is missing or
            the transition was rejected (the row is left unchanged)
        """
        target = MessageStatus(target)
        stmt = (
            update(Message)
            .where(Message.id == message_id, Message.status.in_(sources_for(target)))
            .values(status=target, **fields)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 1:
                return True

            current = await session.get(Message, message_id)

        if current is None:
            logger.warning("status_transition_missing_message", message_id=message_id, target=target.value)
            return False

        source = MessageStatus(current.status)
        if source == target and not can_transition(source, target):
            logger.info("status_transition_noop", message_id=message_id, status=target.value)
        else:
            logger.warning(
                "status_transition_rejected",
                message_id=message_id,
                source=source.value,
                target=target.value,
            )
        track_transition_rejected(source.value, target.value)
        return False

    async def bump_retry_count(self, message_id: str) -> int:
        """Atomically increment retry_count and return the new value."""
        async with self.session_factory() as session:
            await session.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(retry_count=Message.retry_count + 1)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            result = await session.execute(select(Message.retry_count).where(Message.id == message_id))
            return result.scalar_one_or_none() or 0

    async def merge_metadata(self, message_id: str, extra: dict) -> None:
        """Shallow-merge keys into the message metadata bag."""
        async with self.session_factory() as session:
            message = await session.get(Message, message_id)
            if not message:
                return
            message.metadata_json = {**(message.metadata_json or {}), **extra}
            await session.commit()
