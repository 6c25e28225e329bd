import asyncio
from datetime import datetime, timedelta

import pytest

from core.errors import TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeType
from models import Message
from routers.messaging.adapters import ConversationKey
from routers.messaging.coordinator import ComposeDraft, ConversationView, MessageStore, ViewState
from routers.messaging.service import RejectReason, send_direct_message
from utils.redis_pubsub import RedisChangeFeed


def _insert(message_id, sender, receiver, body, created_at):
    return ChangeEvent(
        table="messages",
        type=ChangeType.INSERT,
        new={
            "id": message_id,
            "sender_id": sender,
            "receiver_id": receiver,
            "body": body,
            "is_read": False,
            "created_at": created_at.isoformat(),
        },
    )


class GatedStore(MessageStore):
    """Holds `fetch` open until the test releases it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fetch_started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch(self, key, viewer_id):
        self.fetch_started.set()
        await self.release.wait()
        return await super().fetch(key, viewer_id)


@pytest.fixture
def premium_alice(billing):
    billing.premium.add("alice")


@pytest.mark.asyncio
async def test_message_in_fetch_and_feed_appears_once(test_db, session_factory, feed, gate, premium_alice):
    result = await send_direct_message(test_db, sender_id="alice", receiver_id="bob", body="hi", gate=gate)
    assert result.delivered

    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "bob", feed=feed, gate=gate, session_factory=session_factory
    )
    async with view:
        await feed.publish(
            _insert(result.message.id, "alice", "bob", "hi", result.message.created_at)
        )
        assert [m.id for m in view.messages] == [result.message.id]


@pytest.mark.asyncio
async def test_events_during_fetch_are_buffered_then_merged(session_factory, feed, gate, premium_alice):
    store = GatedStore(gate=gate, feed=feed, session_factory=session_factory)
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, store=store, mark_read_on_open=False
    )

    opening = asyncio.create_task(view.open())
    await store.fetch_started.wait()
    assert view.state == ViewState.LOADING

    base = datetime(2026, 3, 1, 9, 0, 0)
    await feed.publish(_insert("t3", "bob", "alice", "third", base + timedelta(seconds=3)))
    await feed.publish(_insert("t1", "bob", "alice", "first", base + timedelta(seconds=1)))
    assert view.messages == []

    store.release.set()
    await opening
    assert view.state == ViewState.LIVE

    await feed.publish(_insert("t2", "alice", "bob", "second", base + timedelta(seconds=2)))
    assert [m.id for m in view.messages] == ["t1", "t2", "t3"]
    await view.close()


@pytest.mark.asyncio
async def test_closed_view_receives_nothing_from_its_old_conversation(test_db, session_factory, feed, gate, premium_alice):
    first = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    await first.open()
    await first.close()

    second = ConversationView(
        ConversationKey.direct("alice", "carl"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    await second.open()
    assert feed.subscription_count("messages") == 1

    await send_direct_message(test_db, sender_id="alice", receiver_id="bob", body="to bob", gate=gate, feed=feed)
    await send_direct_message(test_db, sender_id="alice", receiver_id="carl", body="to carl", gate=gate, feed=feed)

    assert first.messages == []
    assert [m.body for m in second.messages] == ["to carl"]
    await second.close()
    assert feed.subscription_count("messages") == 0


@pytest.mark.asyncio
async def test_sent_message_arrives_through_the_feed_and_clears_draft(session_factory, feed, gate, premium_alice):
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    async with view:
        draft = ComposeDraft("hello bob")
        result = await view.send(draft)

        assert result.delivered
        assert draft.text == ""
        assert [m.body for m in view.messages] == ["hello bob"]


@pytest.mark.asyncio
async def test_rejected_send_keeps_draft(session_factory, feed, gate):
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    async with view:
        draft = ComposeDraft("hello bob")
        result = await view.send(draft)

        assert not result.delivered
        assert result.reason == RejectReason.PREMIUM_REQUIRED
        assert draft.text == "hello bob"
        assert view.messages == []


@pytest.mark.asyncio
async def test_store_failure_keeps_draft(session_factory, feed, gate, premium_alice, monkeypatch):
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )

    async def broken_send(*args, **kwargs):
        raise TransientStoreError("Message not sent, please retry")

    async with view:
        monkeypatch.setattr(view._store, "send", broken_send)
        draft = ComposeDraft("hello bob")
        with pytest.raises(TransientStoreError):
            await view.send(draft)
        assert draft.text == "hello bob"


@pytest.mark.asyncio
async def test_malformed_event_is_dropped(session_factory, feed, gate):
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    async with view:
        await feed.publish(
            ChangeEvent(
                table="messages",
                type=ChangeType.INSERT,
                new={"id": "bad", "sender_id": "bob", "receiver_id": "alice", "created_at": "not a date", "body": "x"},
            )
        )
        await feed.publish(_insert("good", "bob", "alice", "fine", datetime(2026, 3, 1)))

        assert [m.id for m in view.messages] == ["good"]


@pytest.mark.asyncio
async def test_open_marks_partner_messages_read(test_db, session_factory, feed, gate, billing):
    billing.premium.add("bob")
    for body in ("one", "two"):
        await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body=body, gate=gate)

    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    await view.open()
    await view.wait_read()

    test_db.expire_all()
    assert test_db.query(Message).filter_by(is_read=False).count() == 0
    assert all(m.is_read for m in view.messages)
    await view.close()


def test_viewer_must_be_a_participant(feed):
    from core.errors import InvalidOperation

    with pytest.raises(InvalidOperation):
        ConversationView(ConversationKey.direct("alice", "bob"), "carl", feed=feed)


async def _next_message(queue):
    return await asyncio.wait_for(queue.get(), timeout=1)


@pytest.mark.asyncio
async def test_redis_view_sees_message_sent_right_after_open(session_factory, fake_redis, gate, premium_alice):
    feed = RedisChangeFeed(fake_redis)
    arrived = asyncio.Queue()
    view = ConversationView(
        ConversationKey.direct("alice", "bob"),
        "alice",
        feed=feed,
        gate=gate,
        session_factory=session_factory,
        mark_read_on_open=False,
    )
    view.add_listener(lambda message, change: arrived.put_nowait(message))
    try:
        await view.open()
        result = await view.send(ComposeDraft("hi"))
        assert result.delivered

        message = await _next_message(arrived)
        assert message.id == result.message.id
        assert [m.body for m in view.messages] == ["hi"]
    finally:
        await view.close()
        await feed.aclose()


@pytest.mark.asyncio
async def test_redis_reconnect_refetches_missed_messages(test_db, session_factory, fake_redis, gate):
    feed = RedisChangeFeed(fake_redis, retry_seconds=0)
    arrived = asyncio.Queue()
    view = ConversationView(
        ConversationKey.direct("alice", "bob"),
        "alice",
        feed=feed,
        gate=gate,
        session_factory=session_factory,
        mark_read_on_open=False,
    )
    view.add_listener(lambda message, change: arrived.put_nowait(message))
    try:
        await view.open()
        # Written while the feed connection was down, so never announced
        test_db.add(Message(id="missed", sender_id="bob", receiver_id="alice", body="you there?"))
        test_db.commit()

        fake_redis.drop_connections()

        message = await _next_message(arrived)
        assert message.id == "missed"
        assert [m.id for m in view.messages] == ["missed"]
        assert view.state == ViewState.LIVE
    finally:
        await view.close()
        await feed.aclose()


@pytest.mark.asyncio
async def test_open_fails_cleanly_when_feed_never_connects(session_factory, fake_redis, gate):
    fake_redis.block_subscribe = True
    feed = RedisChangeFeed(fake_redis, ready_timeout=0.05)
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )

    with pytest.raises(TransientStoreError):
        await view.open()

    assert view.state == ViewState.CLOSED
    assert feed.subscription_count() == 0
    await feed.aclose()
