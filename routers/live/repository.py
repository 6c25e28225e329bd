"""Live streams and presence repository layer."""

from sqlalchemy import func
from sqlalchemy.orm import Session


def get_stream(db: Session, *, stream_id: str):
    from models import LiveStream

    return db.query(LiveStream).filter(LiveStream.id == stream_id).first()


def list_active_streams(db: Session, *, limit: int, offset: int):
    from models import LiveStream

    return (
        db.query(LiveStream)
        .filter(LiveStream.is_active.is_(True))
        .order_by(LiveStream.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_viewer(db: Session, *, stream_id: str, user_id: str):
    from models import StreamViewer

    return (
        db.query(StreamViewer)
        .filter(StreamViewer.stream_id == stream_id, StreamViewer.user_id == user_id)
        .first()
    )


def count_viewers(db: Session, *, stream_id: str) -> int:
    from models import StreamViewer

    return (
        db.query(func.count(StreamViewer.user_id))
        .filter(StreamViewer.stream_id == stream_id)
        .scalar()
        or 0
    )


def delete_viewer(db: Session, *, stream_id: str, user_id: str) -> int:
    from models import StreamViewer

    return (
        db.query(StreamViewer)
        .filter(StreamViewer.stream_id == stream_id, StreamViewer.user_id == user_id)
        .delete(synchronize_session=False)
    )
