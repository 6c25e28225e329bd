"""Unread badge counts for one user's conversation list."""

import logging
from typing import Dict, Optional

from core.config import LEGACY_MESSAGES_ENABLED
from core.db import SessionLocal
from core.ports.change_feed import ChangeEvent, ChangeType

from .adapters import MESSAGES_TABLE
from .service import count_unread, count_unread_by_partner

logger = logging.getLogger(__name__)


class UnreadCounter:
    """
    Per-partner unread counts for `user_id`, always recounted from the store.

    A recount runs for every INSERT or UPDATE on a message addressed to the
    owner, and whenever a mark-read completes. Counts are never adjusted by
    increment or decrement.
    """

    def __init__(self, user_id: str, *, feed, session_factory=SessionLocal, include_legacy: bool = LEGACY_MESSAGES_ENABLED):
        self.user_id = user_id
        self._feed = feed
        self._session_factory = session_factory
        self._include_legacy = include_legacy
        self._counts: Dict[str, int] = {}
        self._subscription = None

    @property
    def counts(self) -> Dict[str, int]:
        return {partner: count for partner, count in self._counts.items() if count}

    def get(self, partner_id: str) -> int:
        return self._counts.get(partner_id, 0)

    def refresh_all(self) -> None:
        with self._session_factory() as db:
            self._counts = count_unread_by_partner(
                db, user_id=self.user_id, include_legacy=self._include_legacy
            )

    def recount(self, partner_id: str) -> int:
        with self._session_factory() as db:
            count = count_unread(
                db, user_id=self.user_id, partner_id=partner_id, include_legacy=self._include_legacy
            )
        self._counts[partner_id] = count
        return count

    def _addressed_to_me(self, event: ChangeEvent) -> bool:
        return event.type in (ChangeType.INSERT, ChangeType.UPDATE) and event.new.get("receiver_id") == self.user_id

    def _on_event(self, event: ChangeEvent) -> None:
        if self._subscription is None:
            return
        partner_id: Optional[str] = event.new.get("sender_id")
        if partner_id:
            self.recount(partner_id)

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self._feed.subscribe(
            MESSAGES_TABLE, self._addressed_to_me, self._on_event, on_resync=self._on_resync
        )
        try:
            await self._feed.ready(MESSAGES_TABLE)
        except Exception:
            self.stop()
            raise
        self.refresh_all()

    def _on_resync(self) -> None:
        if self._subscription is not None:
            self.refresh_all()

    def stop(self) -> None:
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None

    async def __aenter__(self) -> "UnreadCounter":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()
