from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from app.access_policy import AccessPolicy
from app.change_feed import ChangeFeed, Subscription
from app.models import ChangeEvent, Subject

logger = logging.getLogger(__name__)

Sink = Callable[[ChangeEvent], None]


@dataclass
class GatewayStats:
    delivered: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "delivered": self.delivered,
            "failed": self.failed,
        }


class SessionGateway:
    """One client connection bound to one feed subscription.

    A gateway only delivers; it never touches the store. Closing it is
    idempotent and safe while a publish targeting it is in flight.
    """

    def __init__(self, *, feed: ChangeFeed, subscription: Subscription, subject: Subject) -> None:
        self.feed = feed
        self.subscription = subscription
        self.subject = subject
        self.stats = GatewayStats()
        self._lock = threading.Lock()
        self._closed = False
        self._worker: threading.Thread | None = None

    @classmethod
    def attach(
        cls,
        feed: ChangeFeed,
        subject: Subject,
        *,
        policy: AccessPolicy | None = None,
    ) -> "SessionGateway":
        feed_filter = (policy or AccessPolicy()).subscription_filter(subject)
        subscription = feed.subscribe(feed_filter)
        logger.info(
            "gateway_attached subject_id=%s role=%s subscriber_id=%s",
            subject.id,
            subject.role,
            subscription.subscriber_id,
        )
        return cls(feed=feed, subscription=subscription, subject=subject)

    @property
    def subscriber_id(self) -> str:
        return self.subscription.subscriber_id

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def next_event(self, timeout: float | None = None) -> ChangeEvent | None:
        if self.closed:
            return None
        return self.subscription.get(timeout=timeout)

    def drain(self) -> list[ChangeEvent]:
        if self.closed:
            return []
        return self.subscription.drain()

    def forward_to(self, sink: Sink) -> int:
        """Deliver every pending event to ``sink``; returns how many were delivered."""
        delivered = 0
        while not self.closed:
            event = self.subscription.get(timeout=0)
            if event is None:
                break
            if not self._deliver(sink, event):
                break
            delivered += 1
        return delivered

    def start(self, sink: Sink, *, poll_interval_s: float = 0.5) -> threading.Thread:
        """Run delivery on a dedicated thread until the gateway closes."""
        with self._lock:
            if self._closed:
                raise RuntimeError("gateway is closed")
            if self._worker is not None:
                raise RuntimeError("gateway delivery already started")
            worker = threading.Thread(
                target=self._run,
                args=(sink, poll_interval_s),
                name=f"gateway-{self.subscriber_id}",
                daemon=True,
            )
            self._worker = worker
        worker.start()
        return worker

    def _run(self, sink: Sink, poll_interval_s: float) -> None:
        while not self.closed:
            event = self.subscription.get(timeout=poll_interval_s)
            if event is None:
                continue
            if not self._deliver(sink, event):
                return

    def _deliver(self, sink: Sink, event: ChangeEvent) -> bool:
        try:
            sink(event)
        except Exception:
            self.stats.failed += 1
            logger.warning(
                "gateway_sink_failed subscriber_id=%s event_id=%s; closing gateway",
                self.subscriber_id,
                event.event_id,
                exc_info=True,
            )
            self.close()
            return False
        self.stats.delivered += 1
        return True

    def close(self, *, join_timeout_s: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
        self.feed.unsubscribe(self.subscription)
        logger.info(
            "gateway_detached subscriber_id=%s delivered=%s failed=%s dropped=%s",
            self.subscriber_id,
            self.stats.delivered,
            self.stats.failed,
            self.subscription.dropped,
        )
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=join_timeout_s)

    def __enter__(self) -> "SessionGateway":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
