"""Per-session match ledger: the swipe deck and the optimistic "already liked" set."""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from core.config import DISCOVERY_PAGE_SIZE
from core.db import SessionLocal
from core.errors import InvalidOperation
from core.profiles import list_candidates

from .service import LikeResult, list_liked_user_ids, record_like

logger = logging.getLogger(__name__)


class MatchLedger:
    """
    Owned by exactly one viewing session.

    A target enters the liked set once a like for it succeeds with any result;
    a second like for the same target is answered locally with ALREADY_LIKED.
    One issued while the first is still in flight waits for it: ALREADY_LIKED
    if it succeeded, otherwise it makes its own attempt. A failed like leaves
    the set untouched.
    """

    def __init__(self, actor_id: str, *, session_factory=SessionLocal, feed=None, page_size: int = DISCOVERY_PAGE_SIZE):
        self.actor_id = actor_id
        self._session_factory = session_factory
        self._feed = feed
        self._page_size = page_size
        self._liked: Set[str] = set()
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._candidates: List = []
        self._cursor = 0
        self._passed = 0
        self._exhausted = False

    @property
    def liked(self) -> frozenset:
        return frozenset(self._liked)

    def has_liked(self, target_id: str) -> bool:
        return target_id in self._liked

    def load(self) -> None:
        with self._session_factory() as db:
            self._liked = list_liked_user_ids(db, user_id=self.actor_id)
        self.load_candidates()

    def load_candidates(self) -> None:
        # Liked profiles drop out of discovery, passed ones do not, so the
        # number passed so far is the offset of the next unseen candidate.
        with self._session_factory() as db:
            page = list_candidates(
                db,
                user_id=self.actor_id,
                exclude_user_ids=self._liked,
                limit=self._page_size,
                offset=self._passed,
            )
        self._candidates = [p for p in page if p.user_id not in self._liked]
        self._cursor = 0
        self._exhausted = len(page) < self._page_size

    @property
    def current(self):
        if self._cursor < len(self._candidates):
            return self._candidates[self._cursor]
        return None

    def _advance(self) -> None:
        self._cursor += 1
        if self._cursor >= len(self._candidates) and not self._exhausted:
            self.load_candidates()

    def _drop_candidate(self, target_id: str) -> bool:
        current = self.current
        if current is not None and current.user_id == target_id:
            self._advance()
            return True
        for index in range(self._cursor + 1, len(self._candidates)):
            if self._candidates[index].user_id == target_id:
                del self._candidates[index]
                return True
        return False

    async def like(self, target_id: str) -> LikeResult:
        if target_id == self.actor_id:
            raise InvalidOperation("Cannot like yourself")
        while True:
            if target_id in self._liked:
                return LikeResult.ALREADY_LIKED
            pending = self._in_flight.get(target_id)
            if pending is None:
                break
            await asyncio.shield(pending)

        attempt = asyncio.get_running_loop().create_future()
        self._in_flight[target_id] = attempt
        succeeded = False
        try:
            with self._session_factory() as db:
                result = await record_like(
                    db, liker_id=self.actor_id, liked_id=target_id, feed=self._feed
                )
            succeeded = True
        finally:
            self._in_flight.pop(target_id, None)
            if succeeded:
                self._liked.add(target_id)
            attempt.set_result(succeeded)

        self._drop_candidate(target_id)
        return result

    def pass_candidate(self, target_id: str) -> Optional[object]:
        """Skip a candidate without recording anything. Returns the next candidate."""
        if any(c.user_id == target_id for c in self._candidates[self._cursor:]):
            self._passed += 1
            self._drop_candidate(target_id)
        return self.current
