"""Messaging repository layer."""

from typing import Dict, List

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session


def _pair_filter(model, user_a: str, user_b: str):
    return or_(
        and_(model.sender_id == user_a, model.receiver_id == user_b),
        and_(model.sender_id == user_b, model.receiver_id == user_a),
    )


def list_direct_messages(db: Session, *, user_a: str, user_b: str):
    from models import Message

    return (
        db.query(Message)
        .filter(_pair_filter(Message, user_a, user_b))
        .order_by(Message.created_at.asc(), Message.seq.asc())
        .all()
    )


def list_legacy_messages(db: Session, *, user_a: str, user_b: str):
    from models import LegacyMessage

    return (
        db.query(LegacyMessage)
        .filter(_pair_filter(LegacyMessage, user_a, user_b))
        .order_by(LegacyMessage.created_at.asc(), LegacyMessage.id.asc())
        .all()
    )


def list_messages_involving(db: Session, *, user_id: str, legacy: bool = False):
    from models import LegacyMessage, Message

    model = LegacyMessage if legacy else Message
    tiebreak = LegacyMessage.id if legacy else Message.seq
    return (
        db.query(model)
        .filter(or_(model.sender_id == user_id, model.receiver_id == user_id))
        .order_by(model.created_at.desc(), tiebreak.desc())
        .all()
    )


def list_unread_from(db: Session, *, reader_id: str, partner_id: str, legacy: bool = False):
    from models import LegacyMessage, Message

    model = LegacyMessage if legacy else Message
    return (
        db.query(model)
        .filter(
            model.receiver_id == reader_id,
            model.sender_id == partner_id,
            model.is_read.is_(False),
        )
        .all()
    )


def count_unread_by_sender(db: Session, *, reader_id: str, legacy: bool = False) -> Dict[str, int]:
    from models import LegacyMessage, Message

    model = LegacyMessage if legacy else Message
    rows = (
        db.query(model.sender_id, func.count(model.id))
        .filter(model.receiver_id == reader_id, model.is_read.is_(False))
        .group_by(model.sender_id)
        .all()
    )
    return {sender_id: int(count) for sender_id, count in rows}


def count_unread_from(db: Session, *, reader_id: str, partner_id: str, legacy: bool = False) -> int:
    from models import LegacyMessage, Message

    model = LegacyMessage if legacy else Message
    return (
        db.query(func.count(model.id))
        .filter(
            model.receiver_id == reader_id,
            model.sender_id == partner_id,
            model.is_read.is_(False),
        )
        .scalar()
        or 0
    )


def list_recent_stream_messages(db: Session, *, stream_id: str, limit: int) -> List:
    from models import StreamMessage

    rows = (
        db.query(StreamMessage)
        .filter(StreamMessage.stream_id == stream_id)
        .order_by(StreamMessage.created_at.desc(), StreamMessage.seq.desc())
        .limit(limit)
        .all()
    )
    rows.reverse()
    return rows
