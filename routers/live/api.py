import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from auth import AuthSession
from core.config import SSE_HEARTBEAT_SECONDS
from core.db import get_db
from core.errors import ServiceError, to_http_exception
from core.profiles import get_profiles_by_user_ids
from routers.dependencies import (
    get_change_feed,
    get_current_session,
    get_entitlement_gate,
    get_session_factory,
    get_stream_session,
)
from utils.sse import SSE_HEADERS, sse_format, sse_retry

from .presence import StreamViewing
from .schemas import (
    CreateStreamRequest,
    JoinResponse,
    StreamListResponse,
    StreamResponse,
    ViewerCountResponse,
)
from .service import JoinResult
from .service import create_stream as service_create_stream
from .service import end_stream as service_end_stream
from .service import get_stream as service_get_stream
from .service import join_stream as service_join_stream
from .service import leave_stream as service_leave_stream
from .service import list_active_streams as service_list_active_streams
from .service import recount_viewers as service_recount_viewers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/streams", tags=["Live Streams"])


def _join_failure(result: JoinResult) -> HTTPException:
    if result == JoinResult.PREMIUM_REQUIRED:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": result.value, "message": "This stream is for premium members", "retryable": False},
        )
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": result.value, "message": "Stream is not live", "retryable": False},
    )


def _with_streamer(db: Session, streams) -> list:
    profiles = get_profiles_by_user_ids(db, user_ids=[s.streamer_id for s in streams])
    items = []
    for stream in streams:
        item = StreamResponse.model_validate(stream)
        profile = profiles.get(stream.streamer_id)
        if profile is not None:
            item.streamer_display_name = profile.display_name
            item.streamer_avatar_url = profile.avatar_url
        items.append(item)
    return items


@router.get("", response_model=StreamListResponse)
async def list_streams(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    """Active streams, newest first."""
    streams = service_list_active_streams(db, limit=limit, offset=offset)
    return StreamListResponse(streams=_with_streamer(db, streams))


@router.post("", response_model=StreamResponse)
async def create_stream(
    request: CreateStreamRequest,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    gate=Depends(get_entitlement_gate),
    feed=Depends(get_change_feed),
):
    try:
        stream = await service_create_stream(
            db,
            streamer_id=session.user_id,
            title=request.title,
            description=request.description,
            is_premium_only=request.is_premium_only,
            stream_url=request.stream_url,
            gate=gate,
            feed=feed,
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return _with_streamer(db, [stream])[0]


@router.get("/{stream_id}", response_model=StreamResponse)
async def get_stream(
    stream_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    stream = service_get_stream(db, stream_id=stream_id)
    if stream is None:
        raise HTTPException(status_code=404, detail="Stream not found")
    return _with_streamer(db, [stream])[0]


@router.post("/{stream_id}/end", response_model=StreamResponse)
async def end_stream(
    stream_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    feed=Depends(get_change_feed),
):
    try:
        stream = await service_end_stream(db, stream_id=stream_id, user_id=session.user_id, feed=feed)
    except ServiceError as e:
        raise to_http_exception(e)
    return _with_streamer(db, [stream])[0]


@router.post("/{stream_id}/join", response_model=JoinResponse)
async def join_stream(
    stream_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    gate=Depends(get_entitlement_gate),
    feed=Depends(get_change_feed),
):
    """Register as a viewer. Joining again is a no-op."""
    try:
        result = await service_join_stream(
            db, stream_id=stream_id, user_id=session.user_id, gate=gate, feed=feed
        )
    except ServiceError as e:
        raise to_http_exception(e)
    if result not in (JoinResult.JOINED, JoinResult.ALREADY_JOINED):
        raise _join_failure(result)
    return JoinResponse(result=result.value, viewer_count=service_recount_viewers(db, stream_id=stream_id))


@router.post("/{stream_id}/leave", response_model=ViewerCountResponse)
async def leave_stream(
    stream_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    feed=Depends(get_change_feed),
):
    try:
        await service_leave_stream(db, stream_id=stream_id, user_id=session.user_id, feed=feed)
    except ServiceError as e:
        raise to_http_exception(e)
    return ViewerCountResponse(
        stream_id=stream_id, viewer_count=service_recount_viewers(db, stream_id=stream_id)
    )


@router.get("/{stream_id}/viewers", response_model=ViewerCountResponse)
async def get_viewer_count(
    stream_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    if service_get_stream(db, stream_id=stream_id) is None:
        raise HTTPException(status_code=404, detail="Stream not found")
    return ViewerCountResponse(
        stream_id=stream_id, viewer_count=service_recount_viewers(db, stream_id=stream_id)
    )


@router.get("/{stream_id}/watch")
async def watch_stream(
    stream_id: str,
    request: Request,
    session: AuthSession = Depends(get_stream_session),
    gate=Depends(get_entitlement_gate),
    feed=Depends(get_change_feed),
    session_factory=Depends(get_session_factory),
):
    """
    SSE presence channel. The caller is a viewer for as long as the connection
    stays open; `viewer_count` and `stream_ended` frames follow.
    """
    queue: asyncio.Queue = asyncio.Queue()
    viewing = StreamViewing(
        stream_id,
        session.user_id,
        feed=feed,
        gate=gate,
        session_factory=session_factory,
        on_count=lambda count: queue.put_nowait(("viewer_count", {"viewer_count": count})),
        on_ended=lambda: queue.put_nowait(("stream_ended", {"stream_id": stream_id})),
    )

    async def event_stream():
        async with viewing:
            if not viewing.joined:
                yield sse_format({"code": viewing.join_result.value}, event="join_rejected")
                return
            yield sse_retry(5000)
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event, data = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield sse_format({"type": "heartbeat"}, event="heartbeat")
                    continue
                yield sse_format(data, event=event)
                if event == "stream_ended":
                    break

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)
