"""Subscription registry for change notifications on derived tables.

One registry is created by the application lifespan and handed to the
components that need it (the alert synthesizer publishes, the SSE endpoint
subscribes).  Subscriptions are keyed by (table, filter); a published record
reaches every subscription on that table whose filter fields all match.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("vitalink.realtime")

ChannelKey = tuple[str, frozenset[tuple[str, str]]]


def channel_key(table: str, filters: dict[str, Any] | None = None) -> ChannelKey:
    return table, frozenset((k, str(v)) for k, v in (filters or {}).items())


@dataclass(eq=False)
class Subscription:
    """A live subscription.  Records are queued; ``None`` marks closure."""

    key: ChannelKey
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=100))
    callback: Callable[[dict[str, Any]], None] | None = None
    closed: bool = False

    @property
    def table(self) -> str:
        return self.key[0]

    def matches(self, record: dict[str, Any]) -> bool:
        return all(str(record.get(k)) == v for k, v in self.key[1])

    def deliver(self, record: dict[str, Any]) -> None:
        if self.callback is not None:
            self.callback(record)
        if self.queue.full():
            # slow consumer: drop the oldest record
            self.queue.get_nowait()
            logger.warning("Subscription on %s overflowed; dropped oldest record", self.table)
        self.queue.put_nowait(record)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class SubscriptionRegistry:
    """Owner of every live subscription, with an explicit lifecycle."""

    def __init__(self) -> None:
        self._channels: dict[ChannelKey, list[Subscription]] = {}
        self._destroyed = False

    def subscribe(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        callback: Callable[[dict[str, Any]], None] | None = None,
        max_queue: int = 100,
        queue: asyncio.Queue | None = None,
    ) -> Subscription:
        """Register interest in records of ``table`` matching ``filters``.

        Pass ``queue`` to merge several subscriptions into one consumer queue.

        Raises:
            RuntimeError: If the registry has been destroyed.
        """
        if self._destroyed:
            raise RuntimeError("Subscription registry has been destroyed")
        key = channel_key(table, filters)
        subscription = Subscription(
            key=key,
            queue=queue if queue is not None else asyncio.Queue(maxsize=max_queue),
            callback=callback,
        )
        self._channels.setdefault(key, []).append(subscription)
        logger.debug("Subscribed to %s %s", table, dict(key[1]))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription.  Unknown or already-removed subscriptions are ignored."""
        subscribers = self._channels.get(subscription.key)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
            if not subscribers:
                del self._channels[subscription.key]
        subscription.close()

    def publish(self, table: str, record: dict[str, Any]) -> int:
        """Deliver ``record`` to matching subscriptions.  Returns the delivery count."""
        if self._destroyed:
            return 0
        delivered = 0
        for (channel_table, _), subscribers in list(self._channels.items()):
            if channel_table != table:
                continue
            for subscription in list(subscribers):
                if not subscription.matches(record):
                    continue
                try:
                    subscription.deliver(record)
                except Exception:
                    logger.exception("Subscriber callback failed on %s; unsubscribing", table)
                    self.unsubscribe(subscription)
                    continue
                delivered += 1
        return delivered

    def destroy(self) -> None:
        """Close every subscription and refuse new ones."""
        for subscribers in list(self._channels.values()):
            for subscription in subscribers:
                subscription.close()
        count = len(self)
        self._channels.clear()
        self._destroyed = True
        logger.info("Subscription registry destroyed (%d subscriptions closed)", count)

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def __len__(self) -> int:
        return sum(len(s) for s in self._channels.values())
