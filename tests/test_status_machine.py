"""
Tests for the message status state machine and the message store.

Tests cover:
- The transition table
- Conditional UPDATE leaves rejected rows untouched
- retry_count only moves through bump_retry_count
"""
import pytest

from notifyhub.models.message import (
    ALLOWED_TRANSITIONS,
    Channel,
    Message,
    MessageStatus,
    can_transition,
    sources_for,
)
from notifyhub.services.message_store import SqlMessageStore


@pytest.fixture
def store(session_factory) -> SqlMessageStore:
    return SqlMessageStore(session_factory)


async def new_message(store: SqlMessageStore, status: MessageStatus = MessageStatus.QUEUED) -> Message:
    return await store.create(Message(
        channel=Channel.SMS,
        recipient="+255712345678",
        body="hello",
        status=status,
    ))


class TestTransitionTable:

    @pytest.mark.parametrize("current,target,allowed", [
        ("delivered", "queued", False),
        ("failed", "sending", True),
        ("cancelled", "sent", False),
        ("pending", "cancelled", True),
        ("queued", "delivered", False),
        ("sending", "delivered", True),
        ("sent", "failed", True),
        ("sent", "queued", False),
        ("failed", "queued", True),
        ("failed", "sent", False),
    ])
    def test_table(self, current, target, allowed):
        assert can_transition(current, target) is allowed

    def test_terminal_statuses_have_no_exits(self):
        assert ALLOWED_TRANSITIONS[MessageStatus.DELIVERED] == frozenset()
        assert ALLOWED_TRANSITIONS[MessageStatus.CANCELLED] == frozenset()

    def test_sources_for_cancelled(self):
        assert set(sources_for("cancelled")) == {MessageStatus.PENDING, MessageStatus.QUEUED}


class TestStoreTransitions:

    async def test_allowed_transition_applies_fields(self, store):
        message = await new_message(store)

        assert await store.transition(message.id, MessageStatus.SENDING) is True
        assert await store.transition(message.id, MessageStatus.SENT, provider="beem", external_id="ext-1") is True

        saved = await store.find(message.id)
        assert saved.status == MessageStatus.SENT
        assert saved.provider == "beem"
        assert await store.find_by_external_id("ext-1") is not None

    async def test_rejected_transition_leaves_row_unchanged(self, store):
        message = await new_message(store, MessageStatus.DELIVERED)

        assert await store.transition(message.id, MessageStatus.QUEUED, error_message="nope") is False

        saved = await store.find(message.id)
        assert saved.status == MessageStatus.DELIVERED
        assert saved.error_message is None

    async def test_cancelled_is_final(self, store):
        message = await new_message(store)
        assert await store.transition(message.id, MessageStatus.CANCELLED) is True
        assert await store.transition(message.id, MessageStatus.SENT) is False
        assert (await store.find(message.id)).status == MessageStatus.CANCELLED

    async def test_failed_can_be_retried(self, store):
        message = await new_message(store, MessageStatus.FAILED)
        assert await store.transition(message.id, MessageStatus.SENDING) is True

    async def test_missing_message(self, store):
        assert await store.transition("does-not-exist", MessageStatus.SENT) is False


class TestStoreFields:

    async def test_update_refuses_status(self, store):
        message = await new_message(store)
        with pytest.raises(ValueError):
            await store.update(message.id, status=MessageStatus.SENT)

    async def test_retry_count_only_increases(self, store):
        message = await new_message(store)

        assert await store.bump_retry_count(message.id) == 1
        assert await store.bump_retry_count(message.id) == 2
        with pytest.raises(ValueError):
            await store.update(message.id, retry_count=0)

    async def test_merge_metadata(self, store):
        message = await store.create(Message(
            channel=Channel.EMAIL,
            recipient="user@example.com",
            body="hi",
            subject="Hello",
            status=MessageStatus.QUEUED,
            metadata_json={"campaign": "welcome"},
        ))

        await store.merge_metadata(message.id, {"providers_tried": ["sendgrid"]})

        saved = await store.find(message.id)
        assert saved.metadata_json == {"campaign": "welcome", "providers_tried": ["sendgrid"]}
