"""Ordered, de-duplicated message list for one conversation."""

import bisect
import itertools
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Tuple

from .adapters import ChatMessage

SortKey = Tuple[datetime, int, int]


class Transcript:
    """
    Messages ordered by (created_at, seq, arrival order). Rows carry their
    insertion `seq`; messages without one (seq 0) fall back to arrival order.

    Each message id appears at most once. Newer messages are appended at the
    tail; an older one that arrives late is inserted at its sorted position.
    """

    def __init__(self):
        self._keys: List[SortKey] = []
        self._messages: List[ChatMessage] = []
        self._by_id: Dict[str, SortKey] = {}
        self._arrivals = itertools.count()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ChatMessage]:
        return iter(list(self._messages))

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._by_id

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    def ids(self) -> List[str]:
        return [m.id for m in self._messages]

    def clear(self) -> None:
        self._keys.clear()
        self._messages.clear()
        self._by_id.clear()

    def seed(self, messages: Iterable[ChatMessage]) -> None:
        self.clear()
        for message in messages:
            self.merge(message)

    def merge(self, message: ChatMessage) -> bool:
        """Add a message unless its id is already present. Returns True if added."""
        if message.id in self._by_id:
            return False
        key = (message.created_at, message.seq, next(self._arrivals))
        if not self._keys or key >= self._keys[-1]:
            self._keys.append(key)
            self._messages.append(message)
        else:
            index = bisect.bisect_right(self._keys, key)
            self._keys.insert(index, key)
            self._messages.insert(index, message)
        self._by_id[message.id] = key
        return True

    def replace(self, message: ChatMessage) -> bool:
        """Swap in a newer version of a present message (read flag). Position is kept."""
        key = self._by_id.get(message.id)
        if key is None:
            return False
        index = bisect.bisect_left(self._keys, key)
        if self._messages[index] == message:
            return False
        self._messages[index] = message
        return True
