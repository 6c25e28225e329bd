import logging
from enum import Enum
from datetime import datetime
from typing import List, Set, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.errors import InvalidOperation, TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeType
from utils.change_feed import publish_committed

from .repository import get_like, list_liked_ids, list_likes_by_liker, list_likes_received

logger = logging.getLogger(__name__)

LIKES_TABLE = "likes"

STATUS_PENDING = "pending"
STATUS_RECIPROCATED = "reciprocated"


class LikeResult(str, Enum):
    SENT = "sent"
    ALREADY_LIKED = "already_liked"
    MUTUAL_MATCH = "mutual_match"


def like_payload(like) -> dict:
    return {
        "id": like.id,
        "liker_id": like.liker_id,
        "liked_id": like.liked_id,
        "status": like.status,
        "created_at": like.created_at.isoformat() if like.created_at else None,
    }


async def record_like(db: Session, *, liker_id: str, liked_id: str, feed=None) -> LikeResult:
    """
    Insert Like(liker -> liked) and report whether it completed a mutual match.

    A duplicate like is an expected outcome (ALREADY_LIKED), detected by the
    unique constraint on the ordered pair. Any other store failure rolls back
    and raises TransientStoreError; the like then does not exist.
    """
    from models import Like

    if not liker_id or not liked_id:
        raise InvalidOperation("Both users are required")
    if liker_id == liked_id:
        raise InvalidOperation("Cannot like yourself")

    like = Like(liker_id=liker_id, liked_id=liked_id, status=STATUS_PENDING)
    try:
        db.add(like)
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate like ignored: {liker_id} -> {liked_id}")
        return LikeResult.ALREADY_LIKED
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to insert like {liker_id} -> {liked_id}: {e}")
        raise TransientStoreError("Could not record like, please retry") from e

    try:
        reciprocal = get_like(db, liker_id=liked_id, liked_id=liker_id)
        if reciprocal is not None:
            like.status = STATUS_RECIPROCATED
            reciprocal.status = STATUS_RECIPROCATED
        db.commit()
    except IntegrityError:
        # Lost a race with an identical insert that committed first
        db.rollback()
        return LikeResult.ALREADY_LIKED
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to commit like {liker_id} -> {liked_id}: {e}")
        raise TransientStoreError("Could not record like, please retry") from e

    db.refresh(like)
    result = LikeResult.MUTUAL_MATCH if reciprocal is not None else LikeResult.SENT
    logger.info(f"Like recorded: {liker_id} -> {liked_id} ({result.value})")

    await publish_committed(
        feed, ChangeEvent(table=LIKES_TABLE, type=ChangeType.INSERT, new=like_payload(like))
    )
    return result


def list_liked_user_ids(db: Session, *, user_id: str) -> Set[str]:
    return set(list_liked_ids(db, liker_id=user_id))


def list_sent_likes(db: Session, *, user_id: str) -> List:
    return list_likes_by_liker(db, liker_id=user_id)


def list_matches(db: Session, *, user_id: str) -> List[Tuple[str, datetime]]:
    """Mutual partners of `user_id` with the time the match formed, newest first."""
    mine = list_likes_by_liker(db, liker_id=user_id, status=STATUS_RECIPROCATED)
    theirs = {
        like.liker_id: like.created_at
        for like in list_likes_received(db, liked_id=user_id, liker_ids=[m.liked_id for m in mine])
    }
    matches = []
    for like in mine:
        other = theirs.get(like.liked_id)
        if other is None:
            continue
        matches.append((like.liked_id, max(like.created_at, other)))
    matches.sort(key=lambda item: item[1], reverse=True)
    return matches
