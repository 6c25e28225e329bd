"""Match ledger repository layer."""

from sqlalchemy.orm import Session


def get_like(db: Session, *, liker_id: str, liked_id: str):
    from models import Like

    return (
        db.query(Like)
        .filter(Like.liker_id == liker_id, Like.liked_id == liked_id)
        .first()
    )


def list_liked_ids(db: Session, *, liker_id: str):
    from models import Like

    return [row[0] for row in db.query(Like.liked_id).filter(Like.liker_id == liker_id).all()]


def list_likes_by_liker(db: Session, *, liker_id: str, status=None):
    from models import Like

    query = db.query(Like).filter(Like.liker_id == liker_id)
    if status is not None:
        query = query.filter(Like.status == status)
    return query.order_by(Like.created_at.desc()).all()


def list_likes_received(db: Session, *, liked_id: str, liker_ids):
    from models import Like

    ids = list(liker_ids)
    if not ids:
        return []
    return (
        db.query(Like)
        .filter(Like.liked_id == liked_id, Like.liker_id.in_(ids))
        .all()
    )
