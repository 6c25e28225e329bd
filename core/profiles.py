"""Profile lookup facade.

Domains other than Profiles should not query the `Profile` model directly. These
helpers delegate to the Profiles domain service.
"""

from typing import Dict, Iterable

from sqlalchemy.orm import Session


def get_profiles_by_user_ids(db: Session, *, user_ids: Iterable[str]) -> Dict[str, object]:
    from routers.profiles import service as profiles_service

    return {p.user_id: p for p in profiles_service.get_profiles(db, user_ids=user_ids)}


def set_premium_flag(db: Session, *, user_id: str, is_premium: bool) -> bool:
    from routers.profiles import service as profiles_service

    return profiles_service.set_premium_flag(db, user_id=user_id, is_premium=is_premium)


def list_candidates(db: Session, *, user_id: str, exclude_user_ids: Iterable[str], limit: int, offset: int):
    from routers.profiles import service as profiles_service

    return profiles_service.list_candidates(
        db, user_id=user_id, exclude_user_ids=exclude_user_ids, limit=limit, offset=offset
    )
