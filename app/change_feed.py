from __future__ import annotations

import logging
import os
import threading
import uuid
from collections import deque
from collections.abc import Iterator, Mapping

from app.access_policy import FeedFilter
from app.models import ChangeEvent

logger = logging.getLogger(__name__)


class Subscription:
    """Bounded, lossy-oldest delivery queue owned by one subscriber.

    ``offer`` never blocks: when the queue is full the oldest pending event is
    discarded to make room. Consumers must treat events as upserts keyed by
    complaint id, not as an append-only log.
    """

    def __init__(self, *, subscriber_id: str, feed_filter: FeedFilter, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("subscription capacity must be >= 1")
        self.subscriber_id = subscriber_id
        self.filter = feed_filter
        self.capacity = capacity
        self.dropped = 0
        self._cond = threading.Condition()
        self._queue: deque[ChangeEvent] = deque(maxlen=capacity)
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def pending_count(self) -> int:
        with self._cond:
            return len(self._queue)

    def offer(self, event: ChangeEvent) -> bool:
        with self._cond:
            if self._closed:
                return False
            overflow = len(self._queue) >= self.capacity
            if overflow:
                self.dropped += 1
            self._queue.append(event)
            self._cond.notify()
        if overflow:
            logger.warning(
                "feed_queue_overflow subscriber_id=%s capacity=%s dropped_total=%s",
                self.subscriber_id,
                self.capacity,
                self.dropped,
            )
        return True

    def get(self, timeout: float | None = None) -> ChangeEvent | None:
        with self._cond:
            if not self._queue and not self._closed:
                self._cond.wait_for(lambda: bool(self._queue) or self._closed, timeout=timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def drain(self) -> list[ChangeEvent]:
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
            return items

    def events(self, *, poll_timeout: float = 1.0) -> Iterator[ChangeEvent]:
        """Yield events until the subscription is closed."""
        while not self.closed:
            event = self.get(timeout=poll_timeout)
            if event is not None:
                yield event

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()


class ChangeFeed:
    """In-process publish/subscribe bus for complaint change events.

    No backlog is kept: a subscription only sees events published after it was
    registered. Per-subscription order follows publish order.
    """

    DEFAULT_QUEUE_CAPACITY = 64

    def __init__(self, *, queue_capacity: int = DEFAULT_QUEUE_CAPACITY) -> None:
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        self.queue_capacity = queue_capacity
        self._lock = threading.RLock()
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(self, feed_filter: FeedFilter, *, subscriber_id: str | None = None) -> Subscription:
        subscription = Subscription(
            subscriber_id=subscriber_id or f"sub_{uuid.uuid4().hex[:12]}",
            feed_filter=feed_filter,
            capacity=self.queue_capacity,
        )
        with self._lock:
            if subscription.subscriber_id in self._subscriptions:
                raise ValueError(f"duplicate subscriber_id: {subscription.subscriber_id}")
            self._subscriptions[subscription.subscriber_id] = subscription
        logger.info(
            "feed_subscribed subscriber_id=%s filter=%s",
            subscription.subscriber_id,
            feed_filter.describe(),
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            current = self._subscriptions.get(subscription.subscriber_id)
            removed = current is subscription
            if removed:
                del self._subscriptions[subscription.subscriber_id]
        subscription.close()
        if removed:
            logger.info("feed_unsubscribed subscriber_id=%s", subscription.subscriber_id)
        return removed

    def publish(self, event: ChangeEvent) -> int:
        """Enqueue ``event`` on every matching subscription; returns the match count."""
        delivered = 0
        # offer() never blocks; enqueueing under the registry lock keeps
        # publish order identical across subscribers.
        with self._lock:
            for subscription in self._subscriptions.values():
                if subscription.filter.matches(event.owner_id) and subscription.offer(event):
                    delivered += 1
        return delivered

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def reset(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()


def create_feed_from_env(environ: Mapping[str, str] | None = None) -> ChangeFeed:
    env = os.environ if environ is None else environ
    raw = str(env.get("CDESK_FEED_QUEUE_CAPACITY", "")).strip()
    capacity = ChangeFeed.DEFAULT_QUEUE_CAPACITY
    if raw:
        try:
            capacity = max(1, int(raw))
        except ValueError:
            capacity = ChangeFeed.DEFAULT_QUEUE_CAPACITY
    return ChangeFeed(queue_capacity=capacity)
