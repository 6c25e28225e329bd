import asyncio
import os

os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["RATE_LIMIT_USE_REDIS"] = "false"
os.environ["CHANGE_FEED_BACKEND"] = "memory"
os.environ["AUTH_JWT_SECRET"] = "test-secret"
os.environ["AUTH_JWT_AUDIENCE"] = "authenticated"

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.orm import sessionmaker

import models  # noqa: F401  registers tables
from auth import AuthSession
from core.db import Base, build_engine, get_db
from core.rate_limit import default_rate_limiter
from routers.billing.gate import EntitlementGate
from routers.dependencies import (
    get_billing,
    get_change_feed,
    get_current_session,
    get_entitlement_gate,
    get_session_factory,
    get_storage,
    get_stream_session,
)
from utils.change_feed import InMemoryChangeFeed
from utils.stripe_billing import BillingError


class FakeBilling:
    """Billing collaborator with a fixed set of premium users."""

    def __init__(self, premium=()):
        self.premium = set(premium)
        self.fail = False
        self.refresh_calls = []
        self.checkouts = []

    async def refresh_entitlement(self, *, user_id, email=None):
        self.refresh_calls.append(user_id)
        if self.fail:
            raise BillingError("billing backend unreachable")
        return user_id in self.premium

    async def start_checkout(self, *, user_id, email, plan_tier):
        if self.fail:
            raise BillingError("billing backend unreachable")
        self.checkouts.append((user_id, plan_tier))
        return f"https://checkout.test/{plan_tier}/{user_id}"

    async def open_billing_portal(self, *, user_id, email):
        if self.fail:
            raise BillingError("billing backend unreachable")
        return f"https://portal.test/{user_id}"


class FakeStorage:
    def __init__(self):
        self.objects = {}

    def upload(self, *, key, data, content_type):
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"


class FakePubSub:
    def __init__(self, broker):
        self._broker = broker
        self._queue = asyncio.Queue()
        self.channels = set()
        self.closed = False

    async def subscribe(self, channel):
        if self._broker.block_subscribe:
            await asyncio.Event().wait()
        self.channels.add(channel)
        self._broker.pubsubs.append(self)

    async def unsubscribe(self, channel):
        self.channels.discard(channel)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        yield {"type": "subscribe", "data": 1}
        while True:
            item = await self._queue.get()
            if isinstance(item, Exception):
                raise item
            yield item


class FakeRedis:
    """Just enough of redis.asyncio for the pub/sub change feed."""

    def __init__(self):
        self.pubsubs = []
        self.published = []
        self.block_subscribe = False

    def pubsub(self):
        return FakePubSub(self)

    async def publish(self, channel, data):
        self.published.append((channel, data))
        for pubsub in self.pubsubs:
            if channel in pubsub.channels:
                pubsub._queue.put_nowait({"type": "message", "channel": channel, "data": data})
        return 1

    def drop_connections(self):
        for pubsub in self.pubsubs:
            if pubsub.channels:
                pubsub._queue.put_nowait(RedisConnectionError("connection reset"))


@pytest.fixture
def test_engine():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def gate(billing):
    return EntitlementGate(billing)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    default_rate_limiter.reset()
    yield
    default_rate_limiter.reset()


@pytest.fixture
def make_profile(test_db):
    from models import Profile

    def _make(user_id, **fields):
        fields.setdefault("display_name", user_id.title())
        fields.setdefault("interests", [])
        profile = Profile(user_id=user_id, **fields)
        test_db.add(profile)
        test_db.commit()
        test_db.refresh(profile)
        return profile

    return _make


@pytest.fixture
def build_client(test_db, session_factory, feed, gate, billing, storage):
    """Build a TestClient for the given routers, acting as `user_id`."""
    clients = []

    def _build(*routers, user_id="alice", email=None):
        app = FastAPI()
        for router in routers:
            app.include_router(router)

        def override_get_db():
            yield test_db

        session = AuthSession(user_id=user_id, email=email or f"{user_id}@example.com")
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_current_session] = lambda: session
        app.dependency_overrides[get_stream_session] = lambda: session
        app.dependency_overrides[get_change_feed] = lambda: feed
        app.dependency_overrides[get_entitlement_gate] = lambda: gate
        app.dependency_overrides[get_billing] = lambda: billing
        app.dependency_overrides[get_storage] = lambda: storage
        app.dependency_overrides[get_session_factory] = lambda: session_factory
        client = TestClient(app)
        clients.append(client)
        return client

    yield _build
    for client in clients:
        client.close()
