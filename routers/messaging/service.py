import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import (
    LEGACY_MESSAGES_ENABLED,
    MESSAGE_MAX_LENGTH,
    MESSAGE_MAX_PER_MINUTE,
    STREAM_CHAT_HISTORY_LIMIT,
)
from core.errors import TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeType
from core.profiles import get_profiles_by_user_ids
from core.rate_limit import default_rate_limiter
from core.streams import get_stream
from utils.change_feed import publish_committed
from utils.message_sanitizer import sanitize_message

from .adapters import (
    MESSAGES_TABLE,
    STREAM_MESSAGES_TABLE,
    ChatMessage,
    ConversationKey,
    from_legacy_row,
    from_message_row,
    from_stream_row,
    to_payload,
)
from .repository import (
    count_unread_by_sender,
    count_unread_from,
    list_direct_messages,
    list_legacy_messages,
    list_messages_involving,
    list_recent_stream_messages,
    list_unread_from,
)

logger = logging.getLogger(__name__)


class SendStatus(str, Enum):
    DELIVERED = "delivered"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    PREMIUM_REQUIRED = "premium_required"
    EMPTY_MESSAGE = "empty_message"
    MESSAGE_TOO_LONG = "message_too_long"
    SELF_MESSAGE = "self_message"
    RATE_LIMITED = "rate_limited"
    STREAM_UNAVAILABLE = "stream_unavailable"


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    message: Optional[ChatMessage] = None
    reason: Optional[RejectReason] = None
    retry_after_seconds: int = 0

    @property
    def delivered(self) -> bool:
        return self.status == SendStatus.DELIVERED

    @classmethod
    def ok(cls, message: ChatMessage) -> "SendResult":
        return cls(status=SendStatus.DELIVERED, message=message)

    @classmethod
    def rejected(cls, reason: RejectReason, *, retry_after_seconds: int = 0) -> "SendResult":
        return cls(status=SendStatus.REJECTED, reason=reason, retry_after_seconds=retry_after_seconds)


def _prepare_body(body: str) -> tuple:
    text = sanitize_message(body or "")
    if not text:
        return None, RejectReason.EMPTY_MESSAGE
    if len(text) > MESSAGE_MAX_LENGTH:
        return None, RejectReason.MESSAGE_TOO_LONG
    return text, None


def _check_rate(sender_id: str, rate_limiter) -> Optional[SendResult]:
    rl = rate_limiter.allow(
        key=f"rl:messages:{sender_id}", limit=MESSAGE_MAX_PER_MINUTE, window_seconds=60
    )
    if not rl.allowed:
        return SendResult.rejected(RejectReason.RATE_LIMITED, retry_after_seconds=rl.retry_after_seconds)
    return None


async def send_direct_message(
    db: Session,
    *,
    sender_id: str,
    receiver_id: str,
    body: str,
    gate,
    feed=None,
    rate_limiter=default_rate_limiter,
) -> SendResult:
    """
    Persist a direct message if the pair may talk.

    Nothing is written unless every check passes. The caller's transcript is
    not touched here; the INSERT published on the change feed is what adds
    the message to open conversation views, including the sender's.
    """
    from models import Message

    if sender_id == receiver_id:
        return SendResult.rejected(RejectReason.SELF_MESSAGE)

    text, problem = _prepare_body(body)
    if problem is not None:
        return SendResult.rejected(problem)

    await gate.ensure_loaded(sender_id, receiver_id)
    if not gate.can_message(sender_id, receiver_id):
        logger.info(f"Message {sender_id} -> {receiver_id} rejected: neither side is premium")
        return SendResult.rejected(RejectReason.PREMIUM_REQUIRED)

    limited = _check_rate(sender_id, rate_limiter)
    if limited is not None:
        return limited

    row = Message(sender_id=sender_id, receiver_id=receiver_id, body=text, is_read=False)
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message {sender_id} -> {receiver_id}: {e}")
        raise TransientStoreError("Message not sent, please retry") from e

    message = from_message_row(row)
    logger.debug(f"Message {message.id} stored: {sender_id} -> {receiver_id}")
    await publish_committed(
        feed, ChangeEvent(table=MESSAGES_TABLE, type=ChangeType.INSERT, new=to_payload(message))
    )
    return SendResult.ok(message)


async def send_stream_message(
    db: Session,
    *,
    sender_id: str,
    stream_id: str,
    body: str,
    gate,
    feed=None,
    rate_limiter=default_rate_limiter,
) -> SendResult:
    from models import StreamMessage

    stream = get_stream(db, stream_id=stream_id)
    if stream is None or not stream.is_active:
        return SendResult.rejected(RejectReason.STREAM_UNAVAILABLE)

    text, problem = _prepare_body(body)
    if problem is not None:
        return SendResult.rejected(problem)

    if stream.is_premium_only:
        await gate.ensure_loaded(sender_id)
        if not gate.is_premium(sender_id):
            return SendResult.rejected(RejectReason.PREMIUM_REQUIRED)

    limited = _check_rate(sender_id, rate_limiter)
    if limited is not None:
        return limited

    row = StreamMessage(stream_id=stream_id, user_id=sender_id, body=text)
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store stream message on {stream_id}: {e}")
        raise TransientStoreError("Message not sent, please retry") from e

    message = from_stream_row(row)
    await publish_committed(
        feed, ChangeEvent(table=STREAM_MESSAGES_TABLE, type=ChangeType.INSERT, new=to_payload(message))
    )
    return SendResult.ok(message)


async def send_message(
    db: Session, *, key: ConversationKey, sender_id: str, body: str, gate, feed=None
) -> SendResult:
    if key.is_direct:
        return await send_direct_message(
            db,
            sender_id=sender_id,
            receiver_id=key.partner_of(sender_id),
            body=body,
            gate=gate,
            feed=feed,
        )
    return await send_stream_message(
        db, sender_id=sender_id, stream_id=key.stream_id, body=body, gate=gate, feed=feed
    )


def fetch_direct_messages(
    db: Session, *, user_id: str, partner_id: str, include_legacy: bool = LEGACY_MESSAGES_ENABLED
) -> List[ChatMessage]:
    """Both sides of the conversation, oldest first, legacy rows merged by timestamp ahead of current rows on ties."""
    messages = [from_message_row(r) for r in list_direct_messages(db, user_a=user_id, user_b=partner_id)]
    if include_legacy:
        messages.extend(
            from_legacy_row(r) for r in list_legacy_messages(db, user_a=user_id, user_b=partner_id)
        )
        messages.sort(key=lambda m: (m.created_at, not m.is_legacy, m.seq))
    return messages


def fetch_stream_messages(db: Session, *, stream_id: str, limit: int = STREAM_CHAT_HISTORY_LIMIT) -> List[ChatMessage]:
    return [from_stream_row(r) for r in list_recent_stream_messages(db, stream_id=stream_id, limit=limit)]


def fetch_transcript(db: Session, *, key: ConversationKey, viewer_id: str) -> List[ChatMessage]:
    if key.is_direct:
        return fetch_direct_messages(db, user_id=viewer_id, partner_id=key.partner_of(viewer_id))
    return fetch_stream_messages(db, stream_id=key.stream_id)


async def mark_conversation_read(
    db: Session,
    *,
    reader_id: str,
    partner_id: str,
    feed=None,
    include_legacy: bool = LEGACY_MESSAGES_ENABLED,
) -> int:
    """Mark every unread message from `partner_id` to `reader_id` as read. Returns how many."""
    rows = list_unread_from(db, reader_id=reader_id, partner_id=partner_id)
    legacy_rows = (
        list_unread_from(db, reader_id=reader_id, partner_id=partner_id, legacy=True)
        if include_legacy
        else []
    )
    if not rows and not legacy_rows:
        return 0

    for row in rows:
        row.is_read = True
    for row in legacy_rows:
        row.is_read = True
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to mark conversation {reader_id} <- {partner_id} read: {e}")
        raise TransientStoreError("Could not mark messages read") from e

    updated = [from_message_row(r) for r in rows] + [from_legacy_row(r) for r in legacy_rows]
    for message in updated:
        # Legacy rows are announced in canonical form on the canonical table
        await publish_committed(
            feed, ChangeEvent(table=MESSAGES_TABLE, type=ChangeType.UPDATE, new=to_payload(message))
        )
    logger.debug(f"Marked {len(updated)} messages read: {partner_id} -> {reader_id}")
    return len(updated)


def count_unread(
    db: Session, *, user_id: str, partner_id: str, include_legacy: bool = LEGACY_MESSAGES_ENABLED
) -> int:
    count = count_unread_from(db, reader_id=user_id, partner_id=partner_id)
    if include_legacy:
        count += count_unread_from(db, reader_id=user_id, partner_id=partner_id, legacy=True)
    return count


def count_unread_by_partner(
    db: Session, *, user_id: str, include_legacy: bool = LEGACY_MESSAGES_ENABLED
) -> Dict[str, int]:
    counts = count_unread_by_sender(db, reader_id=user_id)
    if include_legacy:
        for sender_id, count in count_unread_by_sender(db, reader_id=user_id, legacy=True).items():
            counts[sender_id] = counts.get(sender_id, 0) + count
    return counts


def list_conversations(
    db: Session, *, user_id: str, include_legacy: bool = LEGACY_MESSAGES_ENABLED
) -> List[dict]:
    """One entry per partner: last message, unread count and partner profile, newest first."""
    messages = [from_message_row(r) for r in list_messages_involving(db, user_id=user_id)]
    if include_legacy:
        messages.extend(
            from_legacy_row(r) for r in list_messages_involving(db, user_id=user_id, legacy=True)
        )

    latest: Dict[str, ChatMessage] = {}
    for message in messages:
        partner_id = message.receiver_id if message.sender_id == user_id else message.sender_id
        current = latest.get(partner_id)
        if current is None or message.sort_key > current.sort_key:
            latest[partner_id] = message

    unread = count_unread_by_partner(db, user_id=user_id, include_legacy=include_legacy)
    profiles = get_profiles_by_user_ids(db, user_ids=latest.keys())

    conversations = []
    for partner_id, last in latest.items():
        profile = profiles.get(partner_id)
        conversations.append(
            {
                "partner_id": partner_id,
                "partner_display_name": profile.display_name if profile else None,
                "partner_avatar_url": profile.avatar_url if profile else None,
                "partner_is_premium": bool(profile.is_premium) if profile else False,
                "last_message": last.body,
                "last_message_at": last.created_at,
                "last_message_from_me": last.sender_id == user_id,
                "unread_count": unread.get(partner_id, 0),
            }
        )
    conversations.sort(key=lambda c: c["last_message_at"], reverse=True)
    return conversations
