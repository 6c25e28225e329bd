import logging
from typing import Optional

from sqlalchemy.orm import Session

from core.profiles import set_premium_flag

logger = logging.getLogger(__name__)


def _mirror_to_profile(db: Session, *, user_id: str, check) -> None:
    # Only a verified answer may overwrite the stored flag.
    if check.verified:
        set_premium_flag(db, user_id=user_id, is_premium=check.is_premium)


async def get_entitlement(db: Session, *, gate, user_id: str, email: Optional[str] = None, refresh: bool = False) -> bool:
    if refresh or not gate.is_known(user_id):
        check = await gate.check(user_id, email=email)
        _mirror_to_profile(db, user_id=user_id, check=check)
        return check.is_premium
    return gate.is_premium(user_id)


async def complete_checkout(db: Session, *, gate, user_id: str, email: Optional[str] = None) -> bool:
    check = await gate.on_checkout_completed(user_id, email=email)
    _mirror_to_profile(db, user_id=user_id, check=check)
    logger.info(f"Checkout completion processed for user {user_id}: premium={check.is_premium}")
    return check.is_premium


async def start_checkout(*, billing, user_id: str, email: Optional[str], plan_tier: str) -> str:
    return await billing.start_checkout(user_id=user_id, email=email, plan_tier=plan_tier)


async def open_billing_portal(*, billing, user_id: str, email: Optional[str]) -> str:
    return await billing.open_billing_portal(user_id=user_id, email=email)
