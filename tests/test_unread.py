import pytest

from routers.messaging.service import mark_conversation_read, send_direct_message
from routers.messaging.unread import UnreadCounter


@pytest.fixture
def premium_bob(billing):
    billing.premium.add("bob")


@pytest.mark.asyncio
async def test_read_then_new_message_recounts(test_db, session_factory, feed, gate, premium_bob):
    async with UnreadCounter("alice", feed=feed, session_factory=session_factory) as unread:
        await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="hey", gate=gate, feed=feed)
        assert unread.get("bob") == 1

        assert await mark_conversation_read(test_db, reader_id="alice", partner_id="bob", feed=feed) == 1
        assert unread.get("bob") == 0

        await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="still there?", gate=gate, feed=feed)
        assert unread.get("bob") == 1


@pytest.mark.asyncio
async def test_counts_are_loaded_on_start(test_db, session_factory, feed, gate, premium_bob, billing):
    billing.premium.add("carl")
    for sender in ("bob", "bob", "carl"):
        await send_direct_message(test_db, sender_id=sender, receiver_id="alice", body="ping", gate=gate)

    unread = UnreadCounter("alice", feed=feed, session_factory=session_factory)
    await unread.start()

    assert unread.counts == {"bob": 2, "carl": 1}
    unread.stop()
    assert feed.subscription_count() == 0


@pytest.mark.asyncio
async def test_messages_for_someone_else_do_not_touch_counts(test_db, session_factory, feed, gate, premium_bob):
    async with UnreadCounter("alice", feed=feed, session_factory=session_factory) as unread:
        await send_direct_message(test_db, sender_id="bob", receiver_id="carl", body="hi carl", gate=gate, feed=feed)
        await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="hi alice", gate=gate, feed=feed)

        assert unread.counts == {"bob": 1}


@pytest.mark.asyncio
async def test_sender_badge_stays_zero(test_db, session_factory, feed, gate, premium_bob):
    async with UnreadCounter("bob", feed=feed, session_factory=session_factory) as unread:
        await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="hello", gate=gate, feed=feed)

        assert unread.get("alice") == 0


@pytest.mark.asyncio
async def test_legacy_rows_count_when_enabled(test_db, session_factory, feed, gate, premium_bob):
    from models import LegacyMessage

    test_db.add(LegacyMessage(sender_id="bob", receiver_id="alice", content="old hello", is_read=False))
    test_db.commit()
    await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="new hello", gate=gate)

    unread = UnreadCounter("alice", feed=feed, session_factory=session_factory, include_legacy=True)
    unread.refresh_all()
    assert unread.get("bob") == 2

    await mark_conversation_read(test_db, reader_id="alice", partner_id="bob", include_legacy=True)
    assert unread.recount("bob") == 0
