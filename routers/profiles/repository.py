"""Profile Directory repository layer."""

from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session


def get_profile_by_user_id(db: Session, *, user_id: str):
    from models import Profile

    return db.query(Profile).filter(Profile.user_id == user_id).first()


def get_profiles_by_user_ids(db: Session, *, user_ids: Iterable[str]):
    from models import Profile

    ids = list(set(user_ids))
    if not ids:
        return []
    return db.query(Profile).filter(Profile.user_id.in_(ids)).all()


def list_candidates(
    db: Session,
    *,
    exclude_user_ids: List[str],
    gender: Optional[str],
    only_unset_gender: bool,
    only_with_gender: bool,
    limit: int,
    offset: int,
):
    from models import Profile

    query = db.query(Profile)
    if exclude_user_ids:
        query = query.filter(Profile.user_id.notin_(exclude_user_ids))
    if gender is not None:
        query = query.filter(func.lower(Profile.gender) == gender)
    elif only_unset_gender:
        query = query.filter(Profile.gender.is_(None))
    elif only_with_gender:
        query = query.filter(Profile.gender.isnot(None))
    return (
        query.order_by(Profile.created_at.desc(), Profile.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
