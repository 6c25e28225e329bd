"""
Conversation views: one live, ordered, de-duplicated transcript per open
conversation.

A view subscribes to the change feed and waits for the subscription to be
live before it fetches, buffers whatever arrives while the fetch is
outstanding and replays it once the transcript is seeded. If the feed drops
and reconnects, the view re-fetches and merges what it missed. Every event
goes through `_on_event`, the view's only writer. Closing a view removes
its subscription before returning, so a view opened next for another
conversation never sees this one's events.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from core.db import SessionLocal
from core.errors import InvalidOperation, MalformedRowError, TransientStoreError
from core.ports.change_feed import ChangeEvent, ChangeFeedPort, ChangeType

from .adapters import ChatMessage, ConversationKey, from_payload
from .service import SendResult, fetch_transcript, mark_conversation_read, send_message
from .transcript import Transcript

logger = logging.getLogger(__name__)


class ViewState(str, Enum):
    CLOSED = "closed"
    LOADING = "loading"
    LIVE = "live"


@dataclass
class ComposeDraft:
    """Text in the compose box. Cleared only once a send is delivered."""

    text: str = ""


class MessageStore:
    """Store operations a view needs, each in its own session."""

    def __init__(self, *, gate=None, feed=None, session_factory=SessionLocal):
        self._gate = gate
        self._feed = feed
        self._session_factory = session_factory

    async def fetch(self, key: ConversationKey, viewer_id: str) -> List[ChatMessage]:
        with self._session_factory() as db:
            return fetch_transcript(db, key=key, viewer_id=viewer_id)

    async def mark_read(self, *, reader_id: str, partner_id: str) -> int:
        with self._session_factory() as db:
            return await mark_conversation_read(
                db, reader_id=reader_id, partner_id=partner_id, feed=self._feed
            )

    async def send(self, key: ConversationKey, sender_id: str, body: str) -> SendResult:
        if self._gate is None:
            raise InvalidOperation("This view is read-only")
        with self._session_factory() as db:
            return await send_message(
                db, key=key, sender_id=sender_id, body=body, gate=self._gate, feed=self._feed
            )


Listener = Callable[[ChatMessage, ChangeType], object]


class ConversationView:
    def __init__(
        self,
        key: ConversationKey,
        viewer_id: str,
        *,
        feed: ChangeFeedPort,
        store: Optional[MessageStore] = None,
        gate=None,
        unread=None,
        session_factory=SessionLocal,
        mark_read_on_open: bool = True,
    ):
        if key.is_direct and viewer_id not in key.participants:
            raise InvalidOperation("Viewer is not part of this conversation")
        self.key = key
        self.viewer_id = viewer_id
        self._feed = feed
        self._store = store or MessageStore(gate=gate, feed=feed, session_factory=session_factory)
        self._unread = unread
        self._mark_read_on_open = mark_read_on_open

        self.transcript = Transcript()
        self._state = ViewState.CLOSED
        self._generation = 0
        self._subscription = None
        self._buffer: List[ChangeEvent] = []
        self._resync_pending = False
        self._read_task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def messages(self) -> List[ChatMessage]:
        return self.transcript.messages

    @property
    def partner_id(self) -> Optional[str]:
        return self.key.partner_of(self.viewer_id) if self.key.is_direct else None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def open(self) -> "ConversationView":
        if self._state != ViewState.CLOSED:
            raise InvalidOperation(f"View for {self.key} is already open")

        self._generation += 1
        generation = self._generation
        self.transcript.clear()
        self._buffer = []
        self._state = ViewState.LOADING
        self._resync_pending = False
        self._subscription = self._feed.subscribe(
            self.key.table,
            lambda event: self.key.matches_row(event.new),
            self._on_event,
            on_resync=lambda: self._resync(generation),
        )

        try:
            await self._feed.ready(self.key.table)
            fetched = await self._store.fetch(self.key, self.viewer_id)
        except Exception:
            if generation == self._generation:
                self._teardown()
            raise

        if generation != self._generation or self._state != ViewState.LOADING:
            # Closed (and maybe reopened) while the fetch was outstanding
            return self

        self.transcript.seed(fetched)
        buffered, self._buffer = self._buffer, []
        self._state = ViewState.LIVE
        for event in buffered:
            self._apply(event)
        if self._resync_pending:
            await self._resync(generation)
        logger.debug(f"View {self.key} live for {self.viewer_id}: {len(self.transcript)} messages")

        if self.key.is_direct and self._mark_read_on_open:
            self._read_task = asyncio.get_running_loop().create_task(self._mark_read(generation))
        return self

    def _on_event(self, event: ChangeEvent) -> None:
        if self._state == ViewState.CLOSED:
            return
        if self._state == ViewState.LOADING:
            self._buffer.append(event)
            return
        self._apply(event)

    async def _resync(self, generation: int) -> None:
        """Re-fetch after the feed reconnected and merge whatever was missed."""
        if generation != self._generation or self._state == ViewState.CLOSED:
            return
        if self._state == ViewState.LOADING:
            self._resync_pending = True
            return
        self._resync_pending = False
        fetched = await self._store.fetch(self.key, self.viewer_id)
        if generation != self._generation or self._state != ViewState.LIVE:
            return
        for message in fetched:
            if self.transcript.merge(message):
                change = ChangeType.INSERT
            elif self.transcript.replace(message):
                change = ChangeType.UPDATE
            else:
                continue
            for listener in list(self._listeners):
                listener(message, change)
        logger.info(f"View {self.key} resynced for {self.viewer_id}: {len(self.transcript)} messages")

    def _apply(self, event: ChangeEvent) -> None:
        if event.type not in (ChangeType.INSERT, ChangeType.UPDATE):
            return
        try:
            message = from_payload(self.key.table, event.new)
        except MalformedRowError as e:
            logger.error(f"Dropping malformed {event.type.value} on {event.table} for {self.key}: {e}")
            return
        if not self.key.matches(message):
            return

        if event.type == ChangeType.INSERT:
            changed = self.transcript.merge(message)
        else:
            changed = self.transcript.replace(message) or self.transcript.merge(message)
        if changed:
            for listener in list(self._listeners):
                listener(message, event.type)

    async def _mark_read(self, generation: int) -> None:
        partner_id = self.partner_id
        try:
            await self._store.mark_read(reader_id=self.viewer_id, partner_id=partner_id)
        except TransientStoreError as e:
            logger.warning(f"Mark-read for {self.key} failed, unread counts may lag: {e}")
            return
        if self._unread is not None:
            self._unread.recount(partner_id)
        if generation != self._generation:
            logger.debug(f"Mark-read for {self.key} finished after the view closed")

    async def wait_read(self) -> None:
        """Wait for the mark-read started by `open` to finish."""
        task = self._read_task
        if task is not None:
            await task

    def _teardown(self) -> None:
        if self._subscription is not None:
            self._feed.unsubscribe(self._subscription)
            self._subscription = None
        self._buffer = []
        self._state = ViewState.CLOSED

    async def close(self) -> None:
        self._teardown()
        task, self._read_task = self._read_task, None
        if task is not None:
            await task

    async def __aenter__(self) -> "ConversationView":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send(self, draft: ComposeDraft) -> SendResult:
        """
        Send the draft text. The transcript is only updated by the change feed.

        On a rejection or a raised error the draft keeps its text so the user
        can retry.
        """
        if self._state != ViewState.LIVE:
            raise InvalidOperation(f"View for {self.key} is not open")
        result = await self._store.send(self.key, self.viewer_id, draft.text)
        if result.delivered:
            draft.text = ""
        return result
