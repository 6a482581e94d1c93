"""
Order change events.

The engine publishes one OrderChangeEvent per insert/update. Clients keep two
sources of truth apart: their own optimistic guesses and the server stream.
OrderViewCache implements the reconciliation rule: a server event always
wins over an optimistic entry, which lives only until it is confirmed or
fails. Events are applied in write order; one older than the held status is
dropped.
"""
import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Protocol

import redis.asyncio as redis

from flux.config import settings
from flux.models import OrderChangeEvent, OrderChangeFilter
from flux.order_state import OrderStatus

logger = logging.getLogger(__name__)


class ChangePublisher(Protocol):
    async def publish(self, event: OrderChangeEvent) -> None: ...

    def subscribe(self, flt: OrderChangeFilter | None = None) -> AsyncIterator[OrderChangeEvent]: ...


class InMemoryBroker:
    """Fan-out to in-process subscribers. Used by tests and the memory backend."""

    def __init__(self, max_queue: int = 1000):
        self._subscribers: set[asyncio.Queue] = set()
        self._max_queue = max_queue
        self.published: list[OrderChangeEvent] = []

    async def publish(self, event: OrderChangeEvent) -> None:
        self.published.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping order change for slow subscriber (order_id=%s)", event.order_id)

    def open(self) -> asyncio.Queue:
        """Register a subscriber queue before any event it must see is published."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def close(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    async def subscribe(self, flt: OrderChangeFilter | None = None) -> AsyncIterator[OrderChangeEvent]:
        flt = flt or OrderChangeFilter()
        queue = self.open()
        try:
            while True:
                event = await queue.get()
                if event.matches(flt):
                    yield event
        finally:
            self.close(queue)


class RedisBroker:
    """Redis pub/sub on a single channel; filtering happens on the subscriber side."""

    def __init__(self, client: redis.Redis, channel: str | None = None):
        self.client = client
        self.channel = channel or settings.realtime_channel

    async def publish(self, event: OrderChangeEvent) -> None:
        await self.client.publish(self.channel, event.model_dump_json())

    async def subscribe(self, flt: OrderChangeFilter | None = None) -> AsyncIterator[OrderChangeEvent]:
        flt = flt or OrderChangeFilter()
        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    event = OrderChangeEvent.model_validate_json(message["data"])
                except ValueError as e:
                    logger.warning("Invalid order change payload on %s: %s", self.channel, e)
                    continue
                if event.matches(flt):
                    yield event
        finally:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()


class OrderViewCache:
    """
    Client-side view of order statuses.

    confirmed: last status seen on the server stream (or a fresh fetch).
    confirmed_at: when that status was written; older events are dropped.
    provisional: optimistic status set while a request is in flight.
    """

    def __init__(self):
        self.confirmed: dict[str, OrderStatus] = {}
        self.confirmed_at: dict[str, datetime] = {}
        self.provisional: dict[str, OrderStatus] = {}

    def load(self, order_id: str, status: OrderStatus, updated_at: datetime | None = None) -> None:
        self.confirmed[order_id] = status
        if updated_at is None:
            self.confirmed_at.pop(order_id, None)
        else:
            self.confirmed_at[order_id] = updated_at
        self.provisional.pop(order_id, None)

    def apply_optimistic(self, order_id: str, status: OrderStatus) -> None:
        self.provisional[order_id] = status

    def fail_optimistic(self, order_id: str) -> None:
        self.provisional.pop(order_id, None)

    def apply_event(self, event: OrderChangeEvent) -> None:
        seen = self.confirmed_at.get(event.order_id)
        if seen is not None and event.occurred_at < seen:
            logger.debug("Dropping stale %s event for order_id=%s", event.status.value, event.order_id)
            return
        self.confirmed[event.order_id] = event.status
        self.confirmed_at[event.order_id] = event.occurred_at
        self.provisional.pop(event.order_id, None)

    def status(self, order_id: str) -> OrderStatus | None:
        return self.provisional.get(order_id, self.confirmed.get(order_id))

    def is_provisional(self, order_id: str) -> bool:
        return order_id in self.provisional
