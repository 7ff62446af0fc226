"""In-process change notifications for live views.

Stores publish a ChangeEvent after each committed write. Live views hold a
Subscription, wait for the next batch of events and re-query their own data;
events are invalidation signals only and never carry row contents to merge.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """One committed write to a table."""

    table: str
    kind: str
    row_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Interest in events on one or more tables, optionally filtered.

    Must be released with unsubscribe() (or by leaving the ``with`` block)
    when the consuming view goes away.
    """

    def __init__(
        self,
        bus: "EventBus",
        tables: Tuple[str, ...],
        filter_field: Optional[str] = None,
        filter_value: Any = None
    ):
        self._bus = bus
        self.tables = tables
        self.filter_field = filter_field
        self.filter_value = filter_value
        self._queue: asyncio.Queue = asyncio.Queue()
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if event.table not in self.tables:
            return False
        if self.filter_field is None:
            return True
        return event.fields.get(self.filter_field) == self.filter_value

    def deliver(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def next_batch(self) -> List[ChangeEvent]:
        """Wait for at least one event, then take everything already queued.

        Rapid writes collapse into one batch, so a view refetches once for
        all of them.
        """
        batch = [await self._queue.get()]
        while not self._queue.empty():
            batch.append(self._queue.get_nowait())
        return batch

    def pending(self) -> int:
        return self._queue.qsize()

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.unsubscribe()


class EventBus:
    """Fan-out of change events to matching subscriptions."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self,
        tables: Union[str, Tuple[str, ...]],
        filter_field: Optional[str] = None,
        filter_value: Any = None
    ) -> Subscription:
        if isinstance(tables, str):
            tables = (tables,)
        subscription = Subscription(self, tuple(tables), filter_field, filter_value)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {tables} ({len(self._subscriptions)} active)")
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscription.

        Returns:
            Number of subscriptions notified
        """
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)
                delivered += 1
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            logger.debug(f"Unsubscribed from {subscription.tables}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


bus = EventBus()
