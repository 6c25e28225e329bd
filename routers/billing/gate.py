"""
Entitlement gate: the cached answer to "is this user premium".

Reads never block on billing. State is refreshed explicitly: on session start,
on sign-in and token refresh, and after checkout completes. A refresh that
fails resolves to "not premium" so an unverified send is never allowed.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Set

from core.cache import TTLCache
from core.config import ENTITLEMENT_CACHE_SECONDS
from core.ports.auth import AuthPort
from core.ports.billing import BillingPort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntitlementCheck:
    is_premium: bool
    verified: bool  # False when billing could not be reached


class EntitlementGate:
    def __init__(
        self,
        billing: BillingPort,
        *,
        cache: Optional[TTLCache] = None,
        ttl_seconds: float = ENTITLEMENT_CACHE_SECONDS,
        failure_ttl_seconds: float = 30,
    ):
        self._billing = billing
        self._cache = cache or TTLCache()
        self._ttl_seconds = ttl_seconds
        self._failure_ttl_seconds = failure_ttl_seconds
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def _key(user_id: str) -> str:
        return f"entitlement:{user_id}"

    def is_known(self, user_id: str) -> bool:
        return self._cache.get(self._key(user_id)) is not None

    def is_premium(self, user_id: str) -> bool:
        value = self._cache.get(self._key(user_id))
        return bool(value) if value is not None else False

    def can_message(self, sender_id: str, receiver_id: str) -> bool:
        # Either side being premium unlocks the pair.
        return self.is_premium(sender_id) or self.is_premium(receiver_id)

    def set_premium(self, user_id: str, is_premium: bool) -> None:
        self._cache.set(self._key(user_id), bool(is_premium), ttl_seconds=self._ttl_seconds)

    def forget(self, user_id: str) -> None:
        self._cache.delete(self._key(user_id))

    async def check(self, user_id: str, *, email: Optional[str] = None) -> EntitlementCheck:
        try:
            premium = bool(await self._billing.refresh_entitlement(user_id=user_id, email=email))
        except Exception as e:
            logger.warning(f"Entitlement refresh failed for user {user_id}, treating as free: {e}")
            self._cache.set(self._key(user_id), False, ttl_seconds=self._failure_ttl_seconds)
            return EntitlementCheck(is_premium=False, verified=False)
        self.set_premium(user_id, premium)
        logger.debug(f"Entitlement for user {user_id}: premium={premium}")
        return EntitlementCheck(is_premium=premium, verified=True)

    async def refresh(self, user_id: str, *, email: Optional[str] = None) -> bool:
        return (await self.check(user_id, email=email)).is_premium

    async def ensure_loaded(self, *user_ids: str) -> None:
        for user_id in dict.fromkeys(user_ids):
            if user_id and not self.is_known(user_id):
                await self.refresh(user_id)

    async def on_checkout_completed(self, user_id: str, *, email: Optional[str] = None) -> EntitlementCheck:
        return await self.check(user_id, email=email)

    async def on_session_change(self, event, session) -> None:
        from auth import AuthEvent

        if session is None:
            return
        if event == AuthEvent.SIGNED_OUT:
            self.forget(session.user_id)
        elif event in (AuthEvent.SIGNED_IN, AuthEvent.TOKEN_REFRESHED):
            await self.refresh(session.user_id, email=session.email)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def attach(self, auth: AuthPort) -> Callable[[], None]:
        """Refresh for the current session and follow session changes. Returns a detach callable."""
        session = auth.get_current_session()
        if session is not None:
            self._spawn(self.refresh(session.user_id, email=session.email))
        return auth.on_session_change(
            lambda event, changed: self._spawn(self.on_session_change(event, changed))
        )

    async def wait_idle(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
