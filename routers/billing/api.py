import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from auth import AuthSession
from core.db import get_db
from routers.dependencies import get_billing, get_current_session, get_entitlement_gate
from utils.stripe_billing import BillingError, PortalUnavailable

from .schemas import CheckoutRequest, EntitlementResponse, RedirectResponse
from .service import complete_checkout as service_complete_checkout
from .service import get_entitlement as service_get_entitlement
from .service import open_billing_portal as service_open_billing_portal
from .service import start_checkout as service_start_checkout

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_my_entitlement(
    refresh: bool = Query(False, description="Ask billing instead of the cache"),
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    gate=Depends(get_entitlement_gate),
):
    is_premium = await service_get_entitlement(
        db, gate=gate, user_id=session.user_id, email=session.email, refresh=refresh
    )
    return EntitlementResponse(user_id=session.user_id, is_premium=is_premium)


@router.post("/checkout", response_model=RedirectResponse)
async def create_checkout(
    request: CheckoutRequest,
    session: AuthSession = Depends(get_current_session),
    billing=Depends(get_billing),
):
    """Start a premium subscription checkout and return the redirect URL."""
    try:
        url = await service_start_checkout(
            billing=billing, user_id=session.user_id, email=session.email, plan_tier=request.plan_tier
        )
    except BillingError as e:
        logger.error(f"Checkout failed for user {session.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "billing_unavailable", "message": "Could not start checkout", "retryable": True},
        )
    return RedirectResponse(url=url)


@router.post("/checkout/complete", response_model=EntitlementResponse)
async def checkout_completed(
    db: Session = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
    gate=Depends(get_entitlement_gate),
):
    """Called when the user returns from a successful checkout redirect."""
    is_premium = await service_complete_checkout(
        db, gate=gate, user_id=session.user_id, email=session.email
    )
    return EntitlementResponse(user_id=session.user_id, is_premium=is_premium)


@router.post("/portal", response_model=RedirectResponse)
async def open_portal(
    session: AuthSession = Depends(get_current_session),
    billing=Depends(get_billing),
):
    try:
        url = await service_open_billing_portal(
            billing=billing, user_id=session.user_id, email=session.email
        )
    except PortalUnavailable as e:
        logger.info(f"Billing portal unavailable for user {session.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "no_billing_account", "message": "No subscription to manage", "retryable": False},
        )
    except BillingError as e:
        logger.error(f"Billing portal failed for user {session.user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "billing_unavailable", "message": "Could not open billing portal", "retryable": True},
        )
    return RedirectResponse(url=url)
