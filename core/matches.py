"""Match ledger facade for domains that need to know who a user already liked."""

from typing import Set

from sqlalchemy.orm import Session


def list_liked_user_ids(db: Session, *, user_id: str) -> Set[str]:
    from routers.matching import service as matching_service

    return matching_service.list_liked_user_ids(db, user_id=user_id)
