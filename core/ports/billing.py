from typing import Optional, Protocol


class BillingPort(Protocol):
    async def start_checkout(self, *, user_id: str, email: Optional[str], plan_tier: str) -> str:
        """Return the hosted checkout redirect URL."""
        ...

    async def open_billing_portal(self, *, user_id: str, email: Optional[str]) -> str: ...

    async def refresh_entitlement(self, *, user_id: str, email: Optional[str] = None) -> bool:
        """Return whether the user currently has an active premium subscription."""
        ...
