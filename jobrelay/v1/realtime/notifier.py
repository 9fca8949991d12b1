"""
In-process change notifier publishing job row changes to subscribers.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from enum import Enum

from pydantic import BaseModel

from jobrelay.config.logging import get_logger
from jobrelay.v1.jobs.schemas import JobSnapshot

logger = get_logger(__name__)


class ChangeEventType(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


class ChangeEvent(BaseModel):
    """A row change on a watched table."""

    table: str = "job_records"
    event_type: ChangeEventType
    row: JobSnapshot


class Subscription:
    """
    Bounded queue of change events matching one filter.

    When the queue is full the oldest event is dropped; observers poll the
    authoritative store to recover from dropped pushes.
    """

    def __init__(
        self,
        notifier: "ChangeNotifier",
        organization_id: str | None,
        subject_id: str | None,
        event_types: frozenset[ChangeEventType] | None,
        maxsize: int,
    ):
        self._notifier = notifier
        self.organization_id = organization_id
        self.subject_id = subject_id
        self.event_types = event_types
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if self.organization_id and event.row.organization_id != self.organization_id:
            return False
        if self.subject_id and event.row.subject_id != self.subject_id:
            return False
        if self.event_types and event.event_type not in self.event_types:
            return False
        return True

    def offer(self, event: ChangeEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, dropped oldest event",
                organization_id=self.organization_id,
                subject_id=self.subject_id,
                dropped=self.dropped,
            )
        self.queue.put_nowait(event)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._notifier.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while not self.closed:
            yield await self.queue.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ChangeNotifier:
    """Publishes {table, event_type, row} events keyed by organization and subject."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        organization_id: str | None = None,
        subject_id: str | None = None,
        event_types: Iterable[ChangeEventType] | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            organization_id=organization_id,
            subject_id=subject_id,
            event_types=frozenset(event_types) if event_types else None,
            maxsize=self.queue_size,
        )
        self._subscriptions.append(subscription)
        logger.debug(
            "Change subscription opened",
            organization_id=organization_id,
            subject_id=subject_id,
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every matching subscriber; returns the delivery count."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.offer(event)
                delivered += 1
        return delivered

    def publish_row(self, event_type: ChangeEventType, row: JobSnapshot) -> int:
        return self.publish(ChangeEvent(event_type=event_type, row=row))
