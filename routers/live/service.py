import logging
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.errors import Forbidden, InvalidOperation, NotFound, PremiumRequired, TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeType
from utils.change_feed import publish_committed

from .repository import count_viewers, delete_viewer, get_viewer
from .repository import get_stream as repo_get_stream
from .repository import list_active_streams as repo_list_active_streams

logger = logging.getLogger(__name__)

STREAMS_TABLE = "live_streams"
VIEWERS_TABLE = "live_stream_viewers"


class JoinResult(str, Enum):
    JOINED = "joined"
    ALREADY_JOINED = "already_joined"
    PREMIUM_REQUIRED = "premium_required"
    STREAM_UNAVAILABLE = "stream_unavailable"


def stream_payload(stream) -> dict:
    return {
        "id": stream.id,
        "streamer_id": stream.streamer_id,
        "title": stream.title,
        "is_active": bool(stream.is_active),
        "is_premium_only": bool(stream.is_premium_only),
        "viewer_count": stream.viewer_count or 0,
        "ended_at": stream.ended_at.isoformat() if stream.ended_at else None,
    }


def get_stream(db: Session, *, stream_id: str):
    return repo_get_stream(db, stream_id=stream_id)


def list_active_streams(db: Session, *, limit: int = 50, offset: int = 0) -> List:
    return repo_list_active_streams(db, limit=limit, offset=offset)


async def create_stream(
    db: Session,
    *,
    streamer_id: str,
    title: str,
    description: Optional[str],
    is_premium_only: bool,
    stream_url: Optional[str],
    gate,
    feed=None,
):
    """Go live. Only premium users can host."""
    from models import LiveStream

    title = (title or "").strip()
    if not title:
        raise InvalidOperation("Stream title is required")
    await gate.ensure_loaded(streamer_id)
    if not gate.is_premium(streamer_id):
        raise PremiumRequired("Premium membership is required to go live")

    stream = LiveStream(
        streamer_id=streamer_id,
        title=title,
        description=description,
        is_premium_only=is_premium_only,
        stream_url=stream_url,
        is_active=True,
        viewer_count=0,
    )
    try:
        db.add(stream)
        db.commit()
        db.refresh(stream)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create stream for {streamer_id}: {e}")
        raise TransientStoreError("Could not start stream, please retry") from e

    logger.info(f"Stream {stream.id} started by {streamer_id}")
    await publish_committed(
        feed, ChangeEvent(table=STREAMS_TABLE, type=ChangeType.INSERT, new=stream_payload(stream))
    )
    return stream


async def end_stream(db: Session, *, stream_id: str, user_id: str, feed=None):
    stream = repo_get_stream(db, stream_id=stream_id)
    if stream is None:
        raise NotFound("Stream not found")
    if stream.streamer_id != user_id:
        raise Forbidden("Only the streamer can end this stream")
    if not stream.is_active:
        return stream

    old = stream_payload(stream)
    stream.is_active = False
    stream.ended_at = datetime.utcnow()
    try:
        db.commit()
        db.refresh(stream)
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientStoreError("Could not end stream, please retry") from e

    logger.info(f"Stream {stream_id} ended by {user_id}")
    await publish_committed(
        feed,
        ChangeEvent(table=STREAMS_TABLE, type=ChangeType.UPDATE, new=stream_payload(stream), old=old),
    )
    return stream


def recount_viewers(db: Session, *, stream_id: str) -> int:
    """Count viewer rows for the stream and store the result on the stream."""
    count = count_viewers(db, stream_id=stream_id)
    stream = repo_get_stream(db, stream_id=stream_id)
    if stream is not None and stream.viewer_count != count:
        stream.viewer_count = count
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            # The count is still correct; only the denormalized copy is stale
            logger.warning(f"Failed to write viewer_count for stream {stream_id}: {e}")
    return count


async def join_stream(db: Session, *, stream_id: str, user_id: str, gate, feed=None) -> JoinResult:
    """Idempotent: joining twice leaves one viewer row."""
    from models import StreamViewer

    stream = repo_get_stream(db, stream_id=stream_id)
    if stream is None or not stream.is_active:
        return JoinResult.STREAM_UNAVAILABLE

    if stream.is_premium_only and stream.streamer_id != user_id:
        await gate.ensure_loaded(user_id)
        if not gate.is_premium(user_id):
            return JoinResult.PREMIUM_REQUIRED

    if get_viewer(db, stream_id=stream_id, user_id=user_id) is not None:
        return JoinResult.ALREADY_JOINED

    try:
        db.add(StreamViewer(stream_id=stream_id, user_id=user_id))
        db.commit()
    except IntegrityError:
        db.rollback()
        return JoinResult.ALREADY_JOINED
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to join stream {stream_id} as {user_id}: {e}")
        raise TransientStoreError("Could not join stream, please retry") from e

    count = recount_viewers(db, stream_id=stream_id)
    logger.debug(f"{user_id} joined stream {stream_id}, viewers={count}")
    await publish_committed(
        feed,
        ChangeEvent(
            table=VIEWERS_TABLE,
            type=ChangeType.INSERT,
            new={"stream_id": stream_id, "user_id": user_id},
        ),
    )
    return JoinResult.JOINED


async def leave_stream(db: Session, *, stream_id: str, user_id: str, feed=None) -> bool:
    """Remove the viewer row. Returns False if the user was not watching."""
    try:
        deleted = delete_viewer(db, stream_id=stream_id, user_id=user_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to leave stream {stream_id} as {user_id}: {e}")
        raise TransientStoreError("Could not leave stream, please retry") from e

    count = recount_viewers(db, stream_id=stream_id)
    if not deleted:
        return False
    logger.debug(f"{user_id} left stream {stream_id}, viewers={count}")
    await publish_committed(
        feed,
        ChangeEvent(
            table=VIEWERS_TABLE,
            type=ChangeType.DELETE,
            old={"stream_id": stream_id, "user_id": user_id},
        ),
    )
    return True
