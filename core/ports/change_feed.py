"""Change-feed contract: row mutation notifications, delivered at least once."""

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: ChangeType
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)

    @property
    def row(self) -> Dict[str, Any]:
        """The row the event is about: `new` for inserts and updates, `old` for deletes."""
        return self.old if self.type == ChangeType.DELETE else self.new

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "type": self.type.value, "new": self.new, "old": self.old}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=data["table"],
            type=ChangeType(data["type"]),
            new=data.get("new") or {},
            old=data.get("old") or {},
        )


Predicate = Callable[[ChangeEvent], bool]
Handler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]

_subscription_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    """Handle returned by `subscribe`. Owned by whoever subscribed."""

    table: str
    predicate: Optional[Predicate]
    handler: Handler
    on_resync: Optional[Callable[[], object]] = None  # called after a dropped feed reconnects
    id: int = field(default_factory=lambda: next(_subscription_ids))
    active: bool = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        return self.predicate is None or bool(self.predicate(event))


class ChangeFeedPort(Protocol):
    def subscribe(
        self,
        table: str,
        predicate: Optional[Predicate],
        handler: Handler,
        *,
        on_resync: Optional[Callable[[], object]] = None,
    ) -> Subscription: ...

    async def ready(self, table: str) -> None:
        """Return once events for `table` published from now on will be delivered."""
        ...

    def unsubscribe(self, subscription: Subscription) -> None: ...

    async def publish(self, event: ChangeEvent) -> None: ...
