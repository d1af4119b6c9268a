"""
In-process pub/sub push channel.

Stands in for the WebSocket/STOMP broker of a deployed system. Each
subscriber owns a bounded queue; ``publish`` waits at most ``timeout``
seconds per subscriber and reports slow consumers as PushDeliveryError.
A key with no subscribers simply drops the payload.
"""

import logging
import queue
import threading
from typing import Any, Iterator, Optional

from asms.errors import PushDeliveryError

logger = logging.getLogger(__name__)

ADMIN_BROADCAST = "admin.broadcast"


def user_channel(recipient_id: int) -> str:
    """Channel key of a recipient's private notification stream."""
    return f"user.{recipient_id}"


class Subscription:
    """A live stream of payloads for one channel key."""

    def __init__(self, channel: "InMemoryPushChannel", key: str, maxsize: int) -> None:
        self.key = key
        self._channel = channel
        self._queue: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    def _offer(self, payload: dict[str, Any], timeout: float) -> None:
        try:
            self._queue.put(payload, timeout=timeout)
        except queue.Full:
            raise PushDeliveryError(
                f"Subscriber on {self.key} did not accept payload within {timeout}s"
            ) from None

    def get(self, timeout: Optional[float] = None) -> Optional[dict[str, Any]]:
        """Next payload, or None if nothing arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[dict[str, Any]]:
        """Return every payload currently buffered without blocking."""
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items

    def __iter__(self) -> Iterator[dict[str, Any]]:
        while not self._closed.is_set():
            item = self.get(timeout=0.1)
            if item is not None:
                yield item

    def close(self) -> None:
        self._closed.set()
        self._channel._unsubscribe(self)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()


class InMemoryPushChannel:
    """Fan-out of payloads to every live subscription of a key."""

    def __init__(self, subscriber_queue_size: int = 100) -> None:
        self._subscriber_queue_size = subscriber_queue_size
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: str) -> Subscription:
        sub = Subscription(self, key, self._subscriber_queue_size)
        with self._lock:
            self._subscriptions.setdefault(key, []).append(sub)
        logger.debug("Subscribed to %s", key)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(sub.key, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.key, None)

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(key, []))

    def publish(self, key: str, payload: dict[str, Any], timeout: float = 2.0) -> int:
        """Deliver ``payload`` to every subscriber of ``key``.

        Returns:
            Number of subscribers that received the payload.

        Raises:
            PushDeliveryError: If at least one subscriber could not take the
                payload in time. Other subscribers still receive it.
        """
        with self._lock:
            targets = list(self._subscriptions.get(key, []))
        delivered = 0
        failures = []
        for sub in targets:
            try:
                sub._offer(payload, timeout)
                delivered += 1
            except PushDeliveryError as exc:
                failures.append(exc)
        if failures:
            raise PushDeliveryError(
                f"{len(failures)} of {len(targets)} subscribers on {key} missed the push"
            )
        return delivered
