"""In-process publish/subscribe for run status and activity events.

Subscribers filter by run id, organization id, or both (no filter receives
everything).  Delivery is at-least-once from the consumer's point of view:
events are published only after the write they describe has committed, and
SSE consumers replay from the activity table by sequence before following
live events, so a consumer may see an entry twice but never misses one.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class BroadcastEvent:
    channel: str
    run_id: str
    organization_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "run_id": self.run_id,
            "organization_id": self.organization_id,
            **self.payload,
        }


class Subscription:
    """A bounded queue of events matching one filter."""

    def __init__(
        self,
        broadcaster: ActivityBroadcaster,
        run_id: str | None,
        organization_id: str | None,
        maxsize: int,
    ) -> None:
        self.id = uuid4().hex
        self.run_id = run_id
        self.organization_id = organization_id
        self._broadcaster = broadcaster
        self._queue: queue.Queue[BroadcastEvent] = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, event: BroadcastEvent) -> bool:
        if self.run_id is not None and event.run_id != self.run_id:
            return False
        if self.organization_id is not None and event.organization_id != self.organization_id:
            return False
        return True

    def offer(self, event: BroadcastEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            # Slow consumer; it recovers by replaying from the activity table.
            self.dropped += 1

    def get(self, timeout: float | None = None) -> BroadcastEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[BroadcastEvent]:
        events: list[BroadcastEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ActivityBroadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: dict[str, Subscription] = {}

    def subscribe(
        self,
        run_id: UUID | str | None = None,
        organization_id: str | None = None,
    ) -> Subscription:
        sub = Subscription(
            self,
            str(run_id) if run_id is not None else None,
            organization_id,
            self._queue_size,
        )
        with self._lock:
            self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.pop(subscription.id, None)

    def publish(
        self,
        channel: str,
        run_id: UUID | str,
        organization_id: str | None,
        payload: dict[str, Any],
    ) -> BroadcastEvent:
        """Fan an event out to every matching subscriber.

        Fan-out happens under the lock, so two events published in order
        are enqueued in that order for every subscriber.
        """
        event = BroadcastEvent(
            channel=channel,
            run_id=str(run_id),
            organization_id=organization_id,
            payload=payload,
        )
        with self._lock:
            for sub in self._subscriptions.values():
                if sub.matches(event):
                    sub.offer(event)
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
