"""
Canonical chat message type and the adapters that produce it.

Rows from `messages`, the legacy `messages_legacy` table, `live_stream_messages`
and change-feed payloads are all mapped to `ChatMessage` here; nothing past
this module looks at a storage representation.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from core.errors import MalformedRowError

MESSAGES_TABLE = "messages"
STREAM_MESSAGES_TABLE = "live_stream_messages"
LEGACY_ID_PREFIX = "legacy:"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender_id: str
    body: str
    created_at: datetime  # naive UTC
    receiver_id: Optional[str] = None
    stream_id: Optional[str] = None
    is_read: bool = False
    seq: int = 0  # insertion order, breaks created_at ties

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        return (self.created_at, self.seq)

    @property
    def is_legacy(self) -> bool:
        return self.id.startswith(LEGACY_ID_PREFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "stream_id": self.stream_id,
            "body": self.body,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
            "seq": self.seq,
        }


@dataclass(frozen=True)
class ConversationKey:
    """A direct conversation (unordered user pair) or a stream chat (stream id)."""

    kind: str
    participants: Tuple[str, ...] = ()
    stream_id: Optional[str] = None

    @classmethod
    def direct(cls, user_a: str, user_b: str) -> "ConversationKey":
        if not user_a or not user_b or user_a == user_b:
            raise ValueError("A direct conversation needs two distinct users")
        return cls(kind="direct", participants=tuple(sorted((user_a, user_b))))

    @classmethod
    def stream(cls, stream_id: str) -> "ConversationKey":
        if not stream_id:
            raise ValueError("A stream conversation needs a stream id")
        return cls(kind="stream", stream_id=stream_id)

    @property
    def is_direct(self) -> bool:
        return self.kind == "direct"

    @property
    def table(self) -> str:
        return MESSAGES_TABLE if self.is_direct else STREAM_MESSAGES_TABLE

    def partner_of(self, user_id: str) -> str:
        if not self.is_direct or user_id not in self.participants:
            raise ValueError(f"{user_id} is not a participant of {self}")
        return self.participants[1] if self.participants[0] == user_id else self.participants[0]

    def matches_row(self, row: Dict[str, Any]) -> bool:
        if self.is_direct:
            return (
                row.get("stream_id") is None
                and tuple(sorted((str(row.get("sender_id")), str(row.get("receiver_id"))))) == self.participants
            )
        return row.get("stream_id") == self.stream_id

    def matches(self, message: ChatMessage) -> bool:
        if self.is_direct:
            return (
                message.stream_id is None
                and message.receiver_id is not None
                and tuple(sorted((message.sender_id, message.receiver_id))) == self.participants
            )
        return message.stream_id == self.stream_id

    def __str__(self) -> str:
        if self.is_direct:
            return f"direct:{self.participants[0]}:{self.participants[1]}"
        return f"stream:{self.stream_id}"


def parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedRowError(f"Bad timestamp: {value!r}") from e
    else:
        raise MalformedRowError(f"Bad timestamp: {value!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def from_message_row(row) -> ChatMessage:
    return ChatMessage(
        id=str(row.id),
        sender_id=row.sender_id,
        receiver_id=row.receiver_id,
        body=row.body,
        is_read=bool(row.is_read),
        created_at=parse_timestamp(row.created_at),
        seq=getattr(row, "seq", None) or 0,
    )


def from_legacy_row(row) -> ChatMessage:
    return ChatMessage(
        id=f"{LEGACY_ID_PREFIX}{row.id}",
        sender_id=row.sender_id,
        receiver_id=row.receiver_id,
        body=row.content,
        is_read=bool(row.is_read),
        created_at=parse_timestamp(row.created_at),
        seq=int(row.id),
    )


def from_stream_row(row) -> ChatMessage:
    return ChatMessage(
        id=str(row.id),
        sender_id=row.user_id,
        stream_id=row.stream_id,
        body=row.body,
        created_at=parse_timestamp(row.created_at),
        seq=getattr(row, "seq", None) or 0,
    )


def to_payload(message: ChatMessage) -> Dict[str, Any]:
    """JSON-safe change-feed payload for a canonical message."""
    return message.to_dict()


def from_payload(table: str, payload: Dict[str, Any]) -> ChatMessage:
    if not isinstance(payload, dict):
        raise MalformedRowError(f"Payload for {table} is not an object")
    try:
        message_id = payload["id"]
        sender_id = payload["sender_id"]
        body = payload["body"]
        created_at = payload["created_at"]
    except KeyError as e:
        raise MalformedRowError(f"Payload for {table} is missing {e.args[0]!r}") from e
    if not message_id or not sender_id or not isinstance(body, str):
        raise MalformedRowError(f"Payload for {table} has empty identity fields")
    seq = payload.get("seq") or 0
    if not isinstance(seq, int) or isinstance(seq, bool):
        raise MalformedRowError(f"Payload for {table} has a bad seq: {seq!r}")

    if table == MESSAGES_TABLE:
        receiver_id = payload.get("receiver_id")
        if not receiver_id:
            raise MalformedRowError("Direct message payload has no receiver")
        return ChatMessage(
            id=str(message_id),
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            is_read=bool(payload.get("is_read", False)),
            created_at=parse_timestamp(created_at),
            seq=seq,
        )
    if table == STREAM_MESSAGES_TABLE:
        stream_id = payload.get("stream_id")
        if not stream_id:
            raise MalformedRowError("Stream message payload has no stream id")
        return ChatMessage(
            id=str(message_id),
            sender_id=sender_id,
            stream_id=stream_id,
            body=body,
            created_at=parse_timestamp(created_at),
            seq=seq,
        )
    raise MalformedRowError(f"Not a message table: {table}")
