import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from auth import AuthSession
from core.db import get_db
from core.errors import ServiceError, to_http_exception
from routers.dependencies import (
    get_change_feed,
    get_current_session,
    get_entitlement_gate,
    get_session_factory,
)

from .schemas import (
    ConversationListResponse,
    MarkReadResponse,
    SendMessageRequest,
    SendMessageResponse,
    TranscriptResponse,
)
from .service import RejectReason, SendResult
from .service import fetch_direct_messages as service_fetch_direct_messages
from .service import list_conversations as service_list_conversations
from .service import mark_conversation_read as service_mark_conversation_read
from .service import send_direct_message as service_send_direct_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Direct Messages"])

_REJECTION_STATUS = {
    RejectReason.PREMIUM_REQUIRED: status.HTTP_403_FORBIDDEN,
    RejectReason.EMPTY_MESSAGE: status.HTTP_400_BAD_REQUEST,
    RejectReason.MESSAGE_TOO_LONG: status.HTTP_400_BAD_REQUEST,
    RejectReason.SELF_MESSAGE: status.HTTP_400_BAD_REQUEST,
    RejectReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectReason.STREAM_UNAVAILABLE: status.HTTP_404_NOT_FOUND,
}

_REJECTION_MESSAGES = {
    RejectReason.PREMIUM_REQUIRED: "Upgrade to premium to message this user",
    RejectReason.EMPTY_MESSAGE: "Message is empty",
    RejectReason.MESSAGE_TOO_LONG: "Message is too long",
    RejectReason.SELF_MESSAGE: "Cannot message yourself",
    RejectReason.RATE_LIMITED: "Too many messages, slow down",
    RejectReason.STREAM_UNAVAILABLE: "Stream is not live",
}


def send_result_or_raise(result: SendResult) -> SendMessageResponse:
    if result.delivered:
        return SendMessageResponse(status=result.status.value, message=result.message.to_dict())
    headers = None
    if result.reason == RejectReason.RATE_LIMITED:
        headers = {"X-Retry-After": str(result.retry_after_seconds)}
    raise HTTPException(
        status_code=_REJECTION_STATUS[result.reason],
        detail={
            "code": result.reason.value,
            "message": _REJECTION_MESSAGES[result.reason],
            "retryable": result.reason == RejectReason.RATE_LIMITED,
        },
        headers=headers,
    )


async def _mark_read_in_background(session_factory, feed, reader_id: str, partner_id: str) -> None:
    with session_factory() as db:
        try:
            await service_mark_conversation_read(
                db, reader_id=reader_id, partner_id=partner_id, feed=feed
            )
        except ServiceError as e:
            logger.warning(f"Background mark-read {partner_id} -> {reader_id} failed: {e}")


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    db: Session = Depends(get_db), session: AuthSession = Depends(get_current_session)
):
    """My conversations with last message and unread count, newest first."""
    return ConversationListResponse(
        conversations=service_list_conversations(db, user_id=session.user_id)
    )


@router.get("/{partner_id}", response_model=TranscriptResponse)
async def get_conversation(
    partner_id: str,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    feed=Depends(get_change_feed),
    session_factory=Depends(get_session_factory),
):
    """Full transcript with `partner_id`, oldest first. Opening it marks the partner's messages read."""
    if partner_id == session.user_id:
        raise HTTPException(status_code=400, detail="Cannot open a conversation with yourself")
    messages = service_fetch_direct_messages(db, user_id=session.user_id, partner_id=partner_id)
    background_tasks.add_task(
        _mark_read_in_background, session_factory, feed, session.user_id, partner_id
    )
    return TranscriptResponse(messages=[m.to_dict() for m in messages])


@router.post("/{partner_id}", response_model=SendMessageResponse)
async def send_message(
    partner_id: str,
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    gate=Depends(get_entitlement_gate),
    feed=Depends(get_change_feed),
):
    """Send a direct message. Allowed when either side is premium."""
    try:
        result = await service_send_direct_message(
            db,
            sender_id=session.user_id,
            receiver_id=partner_id,
            body=request.body,
            gate=gate,
            feed=feed,
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return send_result_or_raise(result)


@router.post("/{partner_id}/read", response_model=MarkReadResponse)
async def mark_read(
    partner_id: str,
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    feed=Depends(get_change_feed),
):
    try:
        updated = await service_mark_conversation_read(
            db, reader_id=session.user_id, partner_id=partner_id, feed=feed
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return MarkReadResponse(updated=updated)
