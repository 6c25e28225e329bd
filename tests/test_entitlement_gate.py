import pytest

from auth import AuthSession, SessionBroker
from routers.billing.gate import EntitlementGate
from routers.billing.service import complete_checkout, get_entitlement


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "premium,allowed",
    [
        (set(), False),
        ({"alice"}, True),
        ({"bob"}, True),
        ({"alice", "bob"}, True),
    ],
)
async def test_pair_may_message_when_either_side_is_premium(billing, gate, premium, allowed):
    billing.premium.update(premium)
    await gate.ensure_loaded("alice", "bob")

    assert gate.can_message("alice", "bob") is allowed
    assert gate.can_message("bob", "alice") is allowed


def test_unknown_user_is_not_premium(gate, billing):
    assert gate.is_premium("nobody") is False
    assert billing.refresh_calls == []


@pytest.mark.asyncio
async def test_billing_failure_resolves_to_free(billing, gate):
    billing.premium.add("alice")
    billing.fail = True

    check = await gate.check("alice")

    assert check.is_premium is False
    assert check.verified is False
    assert gate.can_message("alice", "bob") is False


@pytest.mark.asyncio
async def test_ensure_loaded_only_asks_billing_once(billing, gate):
    await gate.ensure_loaded("alice", "alice", "bob")
    await gate.ensure_loaded("alice")

    assert billing.refresh_calls == ["alice", "bob"]


@pytest.mark.asyncio
async def test_session_events_drive_refresh_and_forget(billing):
    gate = EntitlementGate(billing)
    broker = SessionBroker()
    detach = gate.attach(broker)

    billing.premium.add("alice")
    broker.sign_in(AuthSession(user_id="alice", email="alice@example.com"))
    await gate.wait_idle()
    assert gate.is_premium("alice") is True

    billing.premium.discard("alice")
    broker.refresh(AuthSession(user_id="alice", email="alice@example.com"))
    await gate.wait_idle()
    assert gate.is_premium("alice") is False

    broker.sign_out()
    await gate.wait_idle()
    assert gate.is_known("alice") is False

    detach()
    broker.sign_in(AuthSession(user_id="alice"))
    await gate.wait_idle()
    assert gate.is_known("alice") is False


@pytest.mark.asyncio
async def test_attach_refreshes_current_session(billing):
    billing.premium.add("bob")
    broker = SessionBroker(_session=AuthSession(user_id="bob"))
    gate = EntitlementGate(billing)

    gate.attach(broker)
    await gate.wait_idle()

    assert gate.is_premium("bob") is True


@pytest.mark.asyncio
async def test_checkout_completion_mirrors_premium_to_profile(test_db, billing, gate, make_profile):
    profile = make_profile("alice")
    assert await get_entitlement(test_db, gate=gate, user_id="alice") is False

    billing.premium.add("alice")
    assert await complete_checkout(test_db, gate=gate, user_id="alice") is True

    test_db.refresh(profile)
    assert profile.is_premium is True


@pytest.mark.asyncio
async def test_unverified_answer_does_not_overwrite_profile_flag(test_db, billing, gate, make_profile):
    profile = make_profile("alice", is_premium=True)
    billing.fail = True

    assert await get_entitlement(test_db, gate=gate, user_id="alice", refresh=True) is False

    test_db.refresh(profile)
    assert profile.is_premium is True
