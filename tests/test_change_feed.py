import asyncio
import json

import pytest

from core.errors import TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeType
from utils.change_feed import InMemoryChangeFeed, publish_committed
from utils.redis_pubsub import RedisChangeFeed, channel_for_table


def _message_event(sender="alice", receiver="bob"):
    return ChangeEvent(
        table="messages",
        type=ChangeType.INSERT,
        new={"id": "m1", "sender_id": sender, "receiver_id": receiver},
    )


@pytest.mark.asyncio
async def test_predicate_filters_delivery():
    feed = InMemoryChangeFeed()
    to_bob, to_carl = [], []
    feed.subscribe("messages", lambda e: e.new["receiver_id"] == "bob", to_bob.append)
    feed.subscribe("messages", lambda e: e.new["receiver_id"] == "carl", to_carl.append)

    await feed.publish(_message_event())

    assert len(to_bob) == 1
    assert to_carl == []


@pytest.mark.asyncio
async def test_unsubscribed_handler_gets_nothing():
    feed = InMemoryChangeFeed()
    received = []
    subscription = feed.subscribe("messages", None, received.append)
    feed.unsubscribe(subscription)

    await feed.publish(_message_event())

    assert received == []
    assert subscription.active is False
    assert feed.subscription_count() == 0


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    feed = InMemoryChangeFeed()
    received = []

    def explode(event):
        raise RuntimeError("handler bug")

    feed.subscribe("messages", None, explode)
    feed.subscribe("messages", None, received.append)

    await feed.publish(_message_event())

    assert len(received) == 1


@pytest.mark.asyncio
async def test_async_handlers_are_awaited():
    feed = InMemoryChangeFeed()
    received = []

    async def handler(event):
        await asyncio.sleep(0)
        received.append(event.new["id"])

    feed.subscribe("messages", None, handler)
    await feed.publish(_message_event())

    assert received == ["m1"]


@pytest.mark.asyncio
async def test_publish_failure_is_logged_not_raised():
    class BrokenFeed:
        async def publish(self, event):
            raise ConnectionError("feed down")

    await publish_committed(BrokenFeed(), _message_event())
    await publish_committed(None, _message_event())


def test_event_round_trips_through_dict():
    event = ChangeEvent(table="live_stream_viewers", type=ChangeType.DELETE, old={"stream_id": "s1", "user_id": "u1"})

    restored = ChangeEvent.from_dict(json.loads(json.dumps(event.to_dict())))

    assert restored == event
    assert restored.row == {"stream_id": "s1", "user_id": "u1"}


@pytest.mark.asyncio
async def test_in_memory_feed_is_ready_immediately():
    feed = InMemoryChangeFeed()
    feed.subscribe("messages", None, lambda event: None)

    await asyncio.wait_for(feed.ready("messages"), timeout=0.01)


@pytest.mark.asyncio
async def test_redis_feed_relays_events_once_ready(fake_redis):
    feed = RedisChangeFeed(fake_redis)
    received = asyncio.Queue()

    subscription = feed.subscribe("messages", None, received.put_nowait)
    await feed.ready("messages")

    await feed.publish(_message_event())
    event = await asyncio.wait_for(received.get(), timeout=1)

    assert event == _message_event()
    assert fake_redis.published[0][0] == channel_for_table("messages")

    feed.unsubscribe(subscription)
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert all(pubsub.closed for pubsub in fake_redis.pubsubs)
    await feed.aclose()


@pytest.mark.asyncio
async def test_redis_feed_drops_malformed_payloads(fake_redis):
    feed = RedisChangeFeed(fake_redis)
    received = asyncio.Queue()
    feed.subscribe("messages", None, received.put_nowait)
    await feed.ready("messages")

    await fake_redis.publish(channel_for_table("messages"), "not json")
    await feed.publish(_message_event())

    event = await asyncio.wait_for(received.get(), timeout=1)
    assert event.new["id"] == "m1"
    assert received.empty()
    await feed.aclose()


@pytest.mark.asyncio
async def test_redis_feed_not_ready_raises_transient_error(fake_redis):
    fake_redis.block_subscribe = True
    feed = RedisChangeFeed(fake_redis, ready_timeout=0.05)
    feed.subscribe("messages", None, lambda event: None)

    with pytest.raises(TransientStoreError):
        await feed.ready("messages")
    await feed.aclose()


@pytest.mark.asyncio
async def test_redis_reconnect_runs_resync_hooks(fake_redis):
    feed = RedisChangeFeed(fake_redis, retry_seconds=0)
    resynced = asyncio.Event()
    received = asyncio.Queue()
    feed.subscribe("messages", None, received.put_nowait, on_resync=resynced.set)
    await feed.ready("messages")

    fake_redis.drop_connections()
    await asyncio.wait_for(resynced.wait(), timeout=1)
    await feed.ready("messages")

    await feed.publish(_message_event())
    event = await asyncio.wait_for(received.get(), timeout=1)
    assert event.new["id"] == "m1"
    await feed.aclose()
