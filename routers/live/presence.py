"""Scoped stream viewing: join on enter, leave on every exit path."""

import asyncio
import logging
from typing import Callable, Optional

from core.config import VIEWER_LEAVE_ATTEMPTS, VIEWER_LEAVE_BACKOFF_SECONDS
from core.db import SessionLocal
from core.errors import TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeType

from .service import (
    STREAMS_TABLE,
    VIEWERS_TABLE,
    JoinResult,
    get_stream,
    join_stream,
    leave_stream,
    recount_viewers,
)

logger = logging.getLogger(__name__)


class StreamViewing:
    """
    `async with StreamViewing(...) as viewing:` keeps the viewer row alive for
    the duration of the block.

    While inside, every viewer join/leave on the stream triggers a recount
    (never an increment) and an UPDATE marking the stream inactive sets
    `ended`. Leaving runs on exit even when the block is cancelled, and a
    leave the store rejects is retried with backoff before giving up.
    """

    def __init__(
        self,
        stream_id: str,
        user_id: str,
        *,
        feed,
        gate,
        session_factory=SessionLocal,
        on_count: Optional[Callable[[int], object]] = None,
        on_ended: Optional[Callable[[], object]] = None,
        leave_attempts: int = VIEWER_LEAVE_ATTEMPTS,
        leave_backoff: float = VIEWER_LEAVE_BACKOFF_SECONDS,
    ):
        self.stream_id = stream_id
        self.user_id = user_id
        self._feed = feed
        self._gate = gate
        self._session_factory = session_factory
        self._on_count = on_count
        self._on_ended = on_ended
        self._leave_attempts = max(1, leave_attempts)
        self._leave_backoff = leave_backoff
        self._subscriptions = []
        self.join_result: Optional[JoinResult] = None
        self.viewer_count = 0
        self.ended = False

    @property
    def joined(self) -> bool:
        return self.join_result in (JoinResult.JOINED, JoinResult.ALREADY_JOINED)

    def _recount(self) -> int:
        with self._session_factory() as db:
            count = recount_viewers(db, stream_id=self.stream_id)
        self.viewer_count = count
        if self._on_count is not None:
            self._on_count(count)
        return count

    def _on_viewer_change(self, event: ChangeEvent) -> None:
        self._recount()

    def _check_ended(self) -> None:
        with self._session_factory() as db:
            stream = get_stream(db, stream_id=self.stream_id)
            active = stream is not None and stream.is_active
        if not active:
            self._mark_ended()

    def _on_stream_change(self, event: ChangeEvent) -> None:
        if event.type == ChangeType.UPDATE and not event.new.get("is_active", True):
            self._mark_ended()

    def _mark_ended(self) -> None:
        if not self.ended:
            self.ended = True
            logger.info(f"Stream {self.stream_id} ended while {self.user_id} was watching")
            if self._on_ended is not None:
                self._on_ended()

    async def __aenter__(self) -> "StreamViewing":
        with self._session_factory() as db:
            self.join_result = await join_stream(
                db, stream_id=self.stream_id, user_id=self.user_id, gate=self._gate, feed=self._feed
            )
        if not self.joined:
            return self

        self._subscriptions = [
            self._feed.subscribe(
                VIEWERS_TABLE,
                lambda event: event.row.get("stream_id") == self.stream_id,
                self._on_viewer_change,
                on_resync=self._recount,
            ),
            self._feed.subscribe(
                STREAMS_TABLE,
                lambda event: event.new.get("id") == self.stream_id,
                self._on_stream_change,
                on_resync=self._check_ended,
            ),
        ]
        try:
            await self._feed.ready(VIEWERS_TABLE)
            await self._feed.ready(STREAMS_TABLE)
        except Exception:
            await self.__aexit__(None, None, None)
            raise
        self._recount()
        return self

    async def _leave(self) -> None:
        delay = self._leave_backoff
        for attempt in range(1, self._leave_attempts + 1):
            try:
                with self._session_factory() as db:
                    await leave_stream(db, stream_id=self.stream_id, user_id=self.user_id, feed=self._feed)
                return
            except TransientStoreError as e:
                if attempt == self._leave_attempts:
                    logger.error(
                        f"Giving up leaving stream {self.stream_id} as {self.user_id} after {attempt} attempts: {e}"
                    )
                    raise
                logger.warning(f"Leave of stream {self.stream_id} as {self.user_id} failed, retrying: {e}")
                await asyncio.sleep(delay)
                delay *= 2

    async def __aexit__(self, exc_type, exc, tb) -> None:
        for subscription in self._subscriptions:
            self._feed.unsubscribe(subscription)
        self._subscriptions = []
        if self.joined:
            await asyncio.shield(self._leave())
