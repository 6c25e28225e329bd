"""
Billing endpoints and the Stripe collaborator, with Stripe mocked out.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from routers.billing import api as billing_router
from utils.stripe_billing import CheckoutFailed, PortalUnavailable, StripeBilling


@pytest.fixture
def client(build_client):
    return build_client(billing_router.router, user_id="alice")


def _listing(*items):
    return SimpleNamespace(data=list(items))


class TestBillingEndpoints:
    def test_entitlement_defaults_to_free(self, client):
        response = client.get("/billing/entitlement")

        assert response.status_code == 200
        assert response.json() == {"user_id": "alice", "is_premium": False}

    def test_entitlement_uses_cache_until_refresh(self, client, billing):
        client.get("/billing/entitlement")
        billing.premium.add("alice")

        assert client.get("/billing/entitlement").json()["is_premium"] is False
        assert client.get("/billing/entitlement", params={"refresh": True}).json()["is_premium"] is True

    def test_checkout_returns_redirect_url(self, client, billing):
        response = client.post("/billing/checkout", json={"plan_tier": "yearly"})

        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.test/yearly/alice"}
        assert billing.checkouts == [("alice", "yearly")]

    def test_checkout_rejects_unknown_plan(self, client):
        response = client.post("/billing/checkout", json={"plan_tier": "lifetime"})
        assert response.status_code == 422

    def test_checkout_failure_is_bad_gateway(self, client, billing):
        billing.fail = True

        response = client.post("/billing/checkout", json={"plan_tier": "monthly"})

        assert response.status_code == 502
        assert response.json()["detail"]["code"] == "billing_unavailable"
        assert response.json()["detail"]["retryable"] is True

    def test_checkout_completion_unlocks_messaging(self, client, billing, gate, make_profile, test_db):
        profile = make_profile("alice")
        billing.premium.add("alice")

        response = client.post("/billing/checkout/complete")

        assert response.json()["is_premium"] is True
        assert gate.can_message("alice", "bob") is True
        test_db.refresh(profile)
        assert profile.is_premium is True

    def test_portal_without_customer_is_404(self, client, billing, monkeypatch):
        async def no_customer(**kwargs):
            raise PortalUnavailable("No billing customer for this user")

        monkeypatch.setattr(billing, "open_billing_portal", no_customer)
        response = client.post("/billing/portal")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "no_billing_account"

    def test_portal_returns_redirect_url(self, client):
        response = client.post("/billing/portal")
        assert response.json() == {"url": "https://portal.test/alice"}


class TestStripeBilling:
    @pytest.mark.asyncio
    async def test_active_subscription_means_premium(self):
        billing = StripeBilling(api_key="sk_test_123")
        with patch("utils.stripe_billing.stripe.Customer.list", return_value=_listing(SimpleNamespace(id="cus_1"))), patch(
            "utils.stripe_billing.stripe.Subscription.list", return_value=_listing(SimpleNamespace(id="sub_1"))
        ) as subscriptions:
            assert await billing.refresh_entitlement(user_id="alice", email="alice@example.com") is True

        assert subscriptions.call_args.kwargs["customer"] == "cus_1"
        assert subscriptions.call_args.kwargs["status"] == "active"

    @pytest.mark.asyncio
    async def test_unknown_customer_is_free(self):
        billing = StripeBilling(api_key="sk_test_123")
        with patch("utils.stripe_billing.stripe.Customer.list", return_value=_listing()), patch(
            "utils.stripe_billing.stripe.Customer.search", return_value=_listing()
        ):
            assert await billing.refresh_entitlement(user_id="alice", email="alice@example.com") is False

    @pytest.mark.asyncio
    async def test_checkout_for_new_customer_passes_email(self):
        billing = StripeBilling(api_key="sk_test_123")
        create = MagicMock(return_value=SimpleNamespace(url="https://checkout.stripe.com/c/pay/cs_test"))
        with patch("utils.stripe_billing.stripe.Customer.list", return_value=_listing()), patch(
            "utils.stripe_billing.stripe.Customer.search", return_value=_listing()
        ), patch("utils.stripe_billing.stripe.checkout.Session.create", create):
            url = await billing.start_checkout(user_id="alice", email="alice@example.com", plan_tier="monthly")

        assert url == "https://checkout.stripe.com/c/pay/cs_test"
        params = create.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["customer_email"] == "alice@example.com"
        assert params["client_reference_id"] == "alice"
        assert params["line_items"][0]["price_data"]["recurring"] == {"interval": "month"}

    @pytest.mark.asyncio
    async def test_stripe_error_becomes_checkout_failed(self):
        billing = StripeBilling(api_key="sk_test_123")
        with patch(
            "utils.stripe_billing.stripe.Customer.list",
            side_effect=stripe.APIConnectionError("network down"),
        ):
            with pytest.raises(CheckoutFailed):
                await billing.start_checkout(user_id="alice", email="alice@example.com", plan_tier="monthly")

    @pytest.mark.asyncio
    async def test_portal_needs_existing_customer(self):
        billing = StripeBilling(api_key="sk_test_123")
        with patch("utils.stripe_billing.stripe.Customer.list", return_value=_listing()), patch(
            "utils.stripe_billing.stripe.Customer.search", return_value=_listing()
        ):
            with pytest.raises(PortalUnavailable):
                await billing.open_billing_portal(user_id="alice", email="alice@example.com")
