"""
In-process change feed.

Handlers are invoked in subscription order from `publish`; coroutine handlers
are awaited. A failing handler is logged and does not stop delivery to the
remaining subscribers.
"""
import inspect
import logging
from typing import Callable, Dict, List, Optional

from core.ports.change_feed import ChangeEvent, Handler, Predicate, Subscription

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Bookkeeping shared by the change-feed backends."""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        table: str,
        predicate: Optional[Predicate],
        handler: Handler,
        *,
        on_resync: Optional[Callable[[], object]] = None,
    ) -> Subscription:
        subscription = Subscription(table=table, predicate=predicate, handler=handler, on_resync=on_resync)
        self._subscriptions.setdefault(table, []).append(subscription)
        logger.debug(f"Subscribed #{subscription.id} to {table}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        # Deactivate first so an in-progress dispatch skips it.
        subscription.active = False
        subs = self._subscriptions.get(subscription.table)
        if subs and subscription in subs:
            subs.remove(subscription)
            logger.debug(f"Unsubscribed #{subscription.id} from {subscription.table}")
        if subs is not None and not subs:
            self._subscriptions.pop(subscription.table, None)

    def subscription_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def ready(self, table: str) -> None:
        """Local subscriptions are live as soon as `subscribe` returns."""

    async def resync(self, table: str) -> None:
        """Tell subscribers of `table` that events may have been missed."""
        for subscription in list(self._subscriptions.get(table, [])):
            if not subscription.active or subscription.on_resync is None:
                continue
            try:
                result = subscription.on_resync()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Resync for subscription #{subscription.id} on {table} failed")

    async def dispatch(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.table, [])):
            try:
                if not subscription.matches(event):
                    continue
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"Change handler #{subscription.id} failed for {event.type.value} on {event.table}"
                )


class InMemoryChangeFeed(SubscriptionRegistry):
    async def publish(self, event: ChangeEvent) -> None:
        await self.dispatch(event)


async def publish_committed(feed, event: ChangeEvent) -> None:
    """Announce a committed write. The write stands even if the announcement fails."""
    if feed is None:
        return
    try:
        await feed.publish(event)
    except Exception as e:
        logger.error(f"Failed to publish {event.type.value} on {event.table}: {e}")


_feed = None


def get_change_feed():
    """Process-wide change feed, backend chosen by CHANGE_FEED_BACKEND."""
    global _feed
    if _feed is None:
        from core.config import CHANGE_FEED_BACKEND

        if CHANGE_FEED_BACKEND == "redis":
            from utils.redis_pubsub import RedisChangeFeed

            _feed = RedisChangeFeed()
        else:
            _feed = InMemoryChangeFeed()
        logger.info(f"Change feed initialized: {type(_feed).__name__}")
    return _feed
