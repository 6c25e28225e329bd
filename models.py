import threading
import time
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from core.db import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


_seq_lock = threading.Lock()
_last_seq = 0


def next_insert_seq() -> int:
    """Strictly increasing per process; breaks created_at ties in insertion order."""
    global _last_seq
    with _seq_lock:
        _last_seq = max(_last_seq + 1, time.time_ns())
        return _last_seq


# =================================
#  Profiles Table
# =================================
class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, unique=True, index=True, nullable=False)  # hosted-auth subject
    email = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    age = Column(Integer, nullable=True)
    location = Column(String, nullable=True)
    interests = Column(JSON, nullable=False, default=list)  # ordered, duplicates allowed
    avatar_url = Column(String, nullable=True)
    gender = Column(String, nullable=True)  # NULL means "not declared"
    is_premium = Column(Boolean, default=False, nullable=False)  # mirrors the entitlement gate
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =================================
#  Likes Table (match ledger)
# =================================
class Like(Base):
    __tablename__ = "likes"

    id = Column(String, primary_key=True, default=generate_uuid)
    liker_id = Column(String, nullable=False, index=True)
    liked_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="pending")  # pending | reciprocated
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("liker_id", "liked_id", name="uq_likes_liker_liked"),
    )


# =================================
#  Direct Messages Table
# =================================
class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=generate_uuid)
    sender_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    seq = Column(BigInteger, default=next_insert_seq, nullable=False)

    __table_args__ = (
        Index("ix_messages_receiver_sender_read", "receiver_id", "sender_id", "is_read"),
    )


class LegacyMessage(Base):
    """Rows written by the previous client release. Read and mark-read only."""

    __tablename__ = "messages_legacy"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# =================================
#  Live Streams
# =================================
class LiveStream(Base):
    __tablename__ = "live_streams"

    id = Column(String, primary_key=True, default=generate_uuid)
    streamer_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    stream_url = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_premium_only = Column(Boolean, default=False, nullable=False)
    viewer_count = Column(Integer, default=0, nullable=False)  # denormalized, rewritten on every recount
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)


class StreamMessage(Base):
    __tablename__ = "live_stream_messages"

    id = Column(String, primary_key=True, default=generate_uuid)
    stream_id = Column(String, ForeignKey("live_streams.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    seq = Column(BigInteger, default=next_insert_seq, nullable=False)


class StreamViewer(Base):
    __tablename__ = "live_stream_viewers"

    stream_id = Column(String, ForeignKey("live_streams.id"), primary_key=True)
    user_id = Column(String, primary_key=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)
