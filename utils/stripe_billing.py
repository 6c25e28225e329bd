"""
Stripe billing collaborator: premium subscription checkout, billing portal and
entitlement lookups. Every Stripe call is blocking and runs in the threadpool.
"""
import logging
from typing import Optional

import stripe
from fastapi.concurrency import run_in_threadpool

from core.config import (
    BILLING_PORTAL_RETURN_URL,
    CHECKOUT_CANCEL_URL,
    CHECKOUT_SUCCESS_URL,
    STRIPE_CURRENCY,
    STRIPE_MONTHLY_AMOUNT_MINOR,
    STRIPE_PRODUCT_NAME,
    STRIPE_SECRET_KEY,
    STRIPE_YEARLY_AMOUNT_MINOR,
)

logger = logging.getLogger(__name__)

PLAN_TIERS = {
    "monthly": {"interval": "month", "amount_minor": STRIPE_MONTHLY_AMOUNT_MINOR},
    "yearly": {"interval": "year", "amount_minor": STRIPE_YEARLY_AMOUNT_MINOR},
}


class BillingError(Exception):
    """Base exception for billing operations"""


class CheckoutFailed(BillingError):
    pass


class PortalUnavailable(BillingError):
    """The user has no billing customer yet, or Stripe refused the portal session."""


class StripeBilling:
    def __init__(self, api_key: str = STRIPE_SECRET_KEY):
        if not api_key:
            logger.warning("STRIPE_SECRET_KEY not set - billing operations will fail")
        self._api_key = api_key

    def _find_customer(self, *, user_id: str, email: Optional[str]):
        if email:
            customers = stripe.Customer.list(email=email, limit=1, api_key=self._api_key)
            if customers.data:
                return customers.data[0]
        found = stripe.Customer.search(
            query=f"metadata['user_id']:'{user_id}'", limit=1, api_key=self._api_key
        )
        return found.data[0] if found.data else None

    def _create_checkout_session(self, *, user_id: str, email: Optional[str], plan_tier: str) -> str:
        plan = PLAN_TIERS.get(plan_tier)
        if plan is None:
            raise CheckoutFailed(f"Unknown plan tier: {plan_tier}")

        customer = self._find_customer(user_id=user_id, email=email)
        params = {
            "mode": "subscription",
            "line_items": [
                {
                    "price_data": {
                        "currency": STRIPE_CURRENCY,
                        "product_data": {"name": STRIPE_PRODUCT_NAME},
                        "unit_amount": plan["amount_minor"],
                        "recurring": {"interval": plan["interval"]},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": CHECKOUT_SUCCESS_URL,
            "cancel_url": CHECKOUT_CANCEL_URL,
            "client_reference_id": user_id,
            "subscription_data": {"metadata": {"user_id": user_id}},
            "api_key": self._api_key,
        }
        if customer is not None:
            params["customer"] = customer.id
        else:
            params["customer_email"] = email
            params["customer_creation"] = "always"
        session = stripe.checkout.Session.create(**params)
        return session.url

    async def start_checkout(self, *, user_id: str, email: Optional[str], plan_tier: str) -> str:
        try:
            url = await run_in_threadpool(
                self._create_checkout_session, user_id=user_id, email=email, plan_tier=plan_tier
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create checkout session for user {user_id}: {str(e)}")
            raise CheckoutFailed(str(e)) from e
        logger.info(f"Checkout session created for user {user_id} ({plan_tier})")
        return url

    def _create_portal_session(self, *, user_id: str, email: Optional[str]) -> str:
        customer = self._find_customer(user_id=user_id, email=email)
        if customer is None:
            raise PortalUnavailable("No billing customer for this user")
        session = stripe.billing_portal.Session.create(
            customer=customer.id, return_url=BILLING_PORTAL_RETURN_URL, api_key=self._api_key
        )
        return session.url

    async def open_billing_portal(self, *, user_id: str, email: Optional[str]) -> str:
        try:
            return await run_in_threadpool(self._create_portal_session, user_id=user_id, email=email)
        except stripe.StripeError as e:
            logger.error(f"Failed to open billing portal for user {user_id}: {str(e)}")
            raise PortalUnavailable(str(e)) from e

    def _has_active_subscription(self, *, user_id: str, email: Optional[str]) -> bool:
        customer = self._find_customer(user_id=user_id, email=email)
        if customer is None:
            return False
        subscriptions = stripe.Subscription.list(
            customer=customer.id, status="active", limit=1, api_key=self._api_key
        )
        return bool(subscriptions.data)

    async def refresh_entitlement(self, *, user_id: str, email: Optional[str] = None) -> bool:
        # Errors propagate; the entitlement gate decides the fallback.
        return await run_in_threadpool(self._has_active_subscription, user_id=user_id, email=email)
