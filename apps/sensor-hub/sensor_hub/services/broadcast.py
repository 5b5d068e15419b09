"""Fan-out of live events to Server-Sent Events subscribers."""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Dict, Literal, Optional, Set

logger = logging.getLogger(__name__)

SubscriberKind = Literal["telemetry", "status"]

# Events a status stream listens to; telemetry streams receive everything.
STATUS_EVENTS = frozenset({"device_online"})
KEEPALIVE_FRAME = ": keep-alive\n\n"


def encode_event(event: str, payload: object) -> str:
    data = json.dumps(payload if payload is not None else {}, default=str, separators=(",", ":"))
    return f"event: {event}\ndata: {data}\n\n"


class Subscriber:
    """One open live-update connection backed by a bounded queue of encoded frames."""

    def __init__(self, kind: SubscriberKind, *, maxsize: int = 256) -> None:
        self.kind: SubscriberKind = kind
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped: int = 0

    def accepts(self, event: str) -> bool:
        return self.kind == "telemetry" or event in STATUS_EVENTS

    def write(self, frame: str) -> None:
        if self.closed:
            raise ConnectionError("subscriber closed")
        self.queue.put_nowait(frame)

    def close(self) -> None:
        self.closed = True


class BroadcastHub:
    """Registry of live subscribers; ``broadcast`` never blocks and never raises."""

    def __init__(self, *, queue_size: int = 256) -> None:
        self.queue_size = int(queue_size)
        self._lock = threading.Lock()
        self._subscribers: Set[Subscriber] = set()
        self.failed_writes: int = 0

    def register(self, kind: SubscriberKind, *, maxsize: Optional[int] = None) -> Subscriber:
        subscriber = Subscriber(kind, maxsize=maxsize or self.queue_size)
        self.add(subscriber)
        return subscriber

    def add(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.add(subscriber)
        logger.debug("Registered %s subscriber (%d open)", subscriber.kind, sum(self.subscriber_count().values()))

    def unregister(self, subscriber: Subscriber) -> None:
        subscriber.close()
        with self._lock:
            self._subscribers.discard(subscriber)

    def subscriber_count(self) -> Dict[str, int]:
        with self._lock:
            members = list(self._subscribers)
        counts: Dict[str, int] = {"telemetry": 0, "status": 0}
        for subscriber in members:
            counts[subscriber.kind] = counts.get(subscriber.kind, 0) + 1
        return counts

    def broadcast(self, event: str, payload: object) -> int:
        """Deliver ``event`` to every interested subscriber; returns the delivered count."""

        try:
            frame = encode_event(event, payload)
        except (TypeError, ValueError) as exc:
            logger.error("Unable to encode %s event: %s", event, exc)
            return 0
        with self._lock:
            targets = list(self._subscribers)
        delivered = 0
        for subscriber in targets:
            if not subscriber.accepts(event):
                continue
            try:
                subscriber.write(frame)
            except Exception as exc:
                subscriber.dropped += 1
                self.failed_writes += 1
                logger.debug("Dropped %s event for %s subscriber: %s", event, subscriber.kind, exc)
                continue
            delivered += 1
        return delivered
