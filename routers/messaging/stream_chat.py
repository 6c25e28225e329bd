from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from auth import AuthSession
from core.db import get_db
from core.errors import ServiceError, to_http_exception
from core.streams import get_stream
from routers.dependencies import get_change_feed, get_current_session, get_entitlement_gate

from .direct import send_result_or_raise
from .schemas import SendMessageRequest, SendMessageResponse, TranscriptResponse
from .service import fetch_stream_messages as service_fetch_stream_messages
from .service import send_stream_message as service_send_stream_message

router = APIRouter(prefix="/messages/streams", tags=["Stream Chat"])


@router.get("/{stream_id}", response_model=TranscriptResponse)
async def get_stream_chat(
    stream_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
):
    """Most recent stream chat messages, oldest first."""
    if get_stream(db, stream_id=stream_id) is None:
        raise HTTPException(status_code=404, detail="Stream not found")
    messages = service_fetch_stream_messages(db, stream_id=stream_id)
    return TranscriptResponse(messages=[m.to_dict() for m in messages])


@router.post("/{stream_id}", response_model=SendMessageResponse)
async def send_stream_chat(
    stream_id: str,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    gate=Depends(get_entitlement_gate),
    feed=Depends(get_change_feed),
):
    try:
        result = await service_send_stream_message(
            db,
            sender_id=session.user_id,
            stream_id=stream_id,
            body=request.body,
            gate=gate,
            feed=feed,
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return send_result_or_raise(result)
