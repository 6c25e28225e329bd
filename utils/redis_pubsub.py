"""
Redis pub/sub change feed, for deployments running more than one worker.

Each table maps to one channel. A listener task per table with live
subscriptions relays incoming events to the local handlers; the task is
cancelled when the last subscription for the table goes away.
"""
import asyncio
import json
import logging
from typing import Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.errors import TransientStoreError
from core.ports.change_feed import ChangeEvent, Handler, Predicate, Subscription
from utils.change_feed import SubscriptionRegistry

logger = logging.getLogger(__name__)

_redis: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get or create Redis connection singleton."""
    global _redis
    if _redis is None:
        from core.config import REDIS_URL

        _redis = redis.from_url(REDIS_URL, decode_responses=True)
        logger.info(f"Redis connection initialized: {REDIS_URL}")
    return _redis


def channel_for_table(table: str) -> str:
    from core.config import CHANGE_FEED_CHANNEL_PREFIX

    return f"{CHANGE_FEED_CHANNEL_PREFIX}:{table}"


class RedisChangeFeed(SubscriptionRegistry):
    """
    `subscribe` starts the table's listener in the background; `ready(table)`
    waits until its SUBSCRIBE has gone through. After a dropped connection is
    re-established, subscribers' `on_resync` hooks run before relaying resumes.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        *,
        retry_seconds: float = 2.0,
        ready_timeout: Optional[float] = None,
    ):
        super().__init__()
        self._client = client
        self._retry_seconds = retry_seconds
        self._ready_timeout = ready_timeout
        self._listeners: Dict[str, asyncio.Task] = {}
        self._ready: Dict[str, asyncio.Event] = {}

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def publish(self, event: ChangeEvent) -> None:
        channel = channel_for_table(event.table)
        await self.client.publish(channel, json.dumps(event.to_dict(), default=str))
        logger.debug(f"Published {event.type.value} to {channel}")

    def subscribe(
        self,
        table: str,
        predicate: Optional[Predicate],
        handler: Handler,
        *,
        on_resync: Optional[Callable[[], object]] = None,
    ) -> Subscription:
        subscription = super().subscribe(table, predicate, handler, on_resync=on_resync)
        if table not in self._listeners:
            ready = asyncio.Event()
            self._ready[table] = ready
            self._listeners[table] = asyncio.get_running_loop().create_task(self._listen(table, ready))
        return subscription

    async def ready(self, table: str) -> None:
        ready = self._ready.get(table)
        if ready is None or ready.is_set():
            return
        timeout = self._ready_timeout
        if timeout is None:
            from core.config import CHANGE_FEED_READY_TIMEOUT

            timeout = CHANGE_FEED_READY_TIMEOUT
        try:
            await asyncio.wait_for(ready.wait(), timeout)
        except asyncio.TimeoutError:
            raise TransientStoreError(f"Change feed for {table} is not connected")

    def unsubscribe(self, subscription: Subscription) -> None:
        super().unsubscribe(subscription)
        if self.subscription_count(subscription.table) == 0:
            self._ready.pop(subscription.table, None)
            task = self._listeners.pop(subscription.table, None)
            if task is not None:
                task.cancel()

    async def _listen(self, table: str, ready: asyncio.Event) -> None:
        channel = channel_for_table(table)
        reconnecting = False
        while True:
            psub = None
            try:
                psub = self.client.pubsub()
                await psub.subscribe(channel)
                logger.debug(f"Subscribed to Redis channel: {channel}")
                if reconnecting:
                    # Anything published while disconnected was lost
                    await self.resync(table)
                    reconnecting = False
                ready.set()
                async for msg in psub.listen():
                    if msg is None or msg.get("type") != "message":
                        continue
                    try:
                        event = ChangeEvent.from_dict(json.loads(msg["data"]))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"Dropping malformed change event on {channel}: {e}")
                        continue
                    await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except RedisError as e:
                ready.clear()
                reconnecting = True
                logger.warning(f"Redis subscription to {channel} dropped, retrying: {e}")
                await asyncio.sleep(self._retry_seconds)
            finally:
                if psub is not None:
                    try:
                        await psub.unsubscribe(channel)
                        await psub.aclose()
                    except RedisError as e:
                        logger.debug(f"Error closing pubsub for {channel}: {e}")

    async def aclose(self) -> None:
        for task in self._listeners.values():
            task.cancel()
        self._listeners.clear()
        self._ready.clear()
