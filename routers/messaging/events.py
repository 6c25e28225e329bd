import asyncio
import logging
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from auth import AuthSession
from core.config import SSE_HEARTBEAT_SECONDS
from routers.dependencies import (
    get_change_feed,
    get_entitlement_gate,
    get_session_factory,
    get_stream_session,
)
from utils.sse import SSE_HEADERS, sse_format, sse_retry

from .adapters import ConversationKey
from .coordinator import ConversationView

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Message Events"])


async def view_event_stream(request: Request, view: ConversationView) -> AsyncGenerator[bytes, None]:
    """
    Stream a conversation view: one `snapshot` frame with the seeded transcript,
    then `message` / `message_updated` frames. The view is closed when the
    client goes away.
    """
    queue: asyncio.Queue = asyncio.Queue()
    remove_listener = view.add_listener(lambda message, change: queue.put_nowait((message, change)))
    try:
        await view.open()
        yield sse_retry(5000)
        yield sse_format({"messages": [m.to_dict() for m in view.messages]}, event="snapshot")

        while True:
            if await request.is_disconnected():
                logger.debug(f"SSE client disconnected from {view.key}")
                break
            try:
                message, change = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield sse_format({"type": "heartbeat"}, event="heartbeat")
                continue
            event_name = "message" if change.value == "INSERT" else "message_updated"
            yield sse_format(message.to_dict(), event=event_name, id_=message.id)
    finally:
        remove_listener()
        await view.close()


def _streaming_response(generator) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/streams/{stream_id}/events")
async def stream_chat_events(
    stream_id: str,
    request: Request,
    session: AuthSession = Depends(get_stream_session),
    feed=Depends(get_change_feed),
    gate=Depends(get_entitlement_gate),
    session_factory=Depends(get_session_factory),
):
    """Live stream chat over SSE."""
    view = ConversationView(
        ConversationKey.stream(stream_id),
        session.user_id,
        feed=feed,
        gate=gate,
        session_factory=session_factory,
    )
    return _streaming_response(view_event_stream(request, view))


@router.get("/{partner_id}/events")
async def direct_message_events(
    partner_id: str,
    request: Request,
    session: AuthSession = Depends(get_stream_session),
    feed=Depends(get_change_feed),
    gate=Depends(get_entitlement_gate),
    session_factory=Depends(get_session_factory),
):
    """Live direct conversation over SSE. Opening it marks the partner's messages read."""
    if partner_id == session.user_id:
        raise HTTPException(status_code=400, detail="Cannot open a conversation with yourself")
    view = ConversationView(
        ConversationKey.direct(session.user_id, partner_id),
        session.user_id,
        feed=feed,
        gate=gate,
        session_factory=session_factory,
    )
    return _streaming_response(view_event_stream(request, view))
