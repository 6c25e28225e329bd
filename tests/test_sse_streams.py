import json

import pytest

from routers.live.presence import StreamViewing
from routers.live.service import create_stream, end_stream
from routers.messaging.adapters import ConversationKey
from routers.messaging.coordinator import ConversationView, ViewState
from routers.messaging.events import view_event_stream
from routers.messaging.service import send_direct_message
from utils.sse import sse_format


class FakeRequest:
    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self):
        return self.disconnected


def _frame(raw: bytes):
    event, data = None, None
    for line in raw.decode().splitlines():
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            data = json.loads(line[len("data: "):])
    return event, data


def test_sse_frame_layout():
    assert sse_format({"a": 1}, event="message", id_="m1") == b'event: message\nid: m1\ndata: {"a":1}\n\n'


@pytest.mark.asyncio
async def test_direct_event_stream_snapshot_then_live_messages(test_db, session_factory, feed, gate, billing):
    billing.premium.add("bob")
    await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="earlier", gate=gate)

    request = FakeRequest()
    view = ConversationView(
        ConversationKey.direct("alice", "bob"), "alice", feed=feed, gate=gate, session_factory=session_factory
    )
    stream = view_event_stream(request, view)

    assert (await stream.__anext__()).startswith(b"retry:")
    event, data = _frame(await stream.__anext__())
    assert event == "snapshot"
    assert [m["body"] for m in data["messages"]] == ["earlier"]

    await view.wait_read()
    await send_direct_message(test_db, sender_id="bob", receiver_id="alice", body="now", gate=gate, feed=feed)

    seen = []
    while "now" not in seen:
        event, data = _frame(await stream.__anext__())
        seen.append(data["body"])
        if data["body"] == "now":
            assert event == "message"

    request.disconnected = True
    await stream.aclose()
    assert view.state == ViewState.CLOSED
    assert feed.subscription_count() == 0


@pytest.mark.asyncio
async def test_stream_viewing_reports_end(test_db, session_factory, feed, gate, billing):
    billing.premium.add("sam")
    stream = await create_stream(
        test_db,
        streamer_id="sam",
        title="Morning run",
        description=None,
        is_premium_only=False,
        stream_url=None,
        gate=gate,
        feed=feed,
    )
    frames = []

    async with StreamViewing(
        stream.id,
        "alice",
        feed=feed,
        gate=gate,
        session_factory=session_factory,
        on_count=lambda count: frames.append(("viewer_count", count)),
        on_ended=lambda: frames.append(("stream_ended", stream.id)),
    ):
        await end_stream(test_db, stream_id=stream.id, user_id="sam", feed=feed)

    assert frames == [("viewer_count", 1), ("stream_ended", stream.id)]
