"""In-process event bus for job and actor lifecycle events."""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from scan_orchestrator.models import Job


class EventType(str, Enum):
    """Event topics."""

    JOB_ENQUEUED = "job_enqueued"
    JOB_LEASED = "job_leased"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_RETRIED = "job_retried"
    LEASE_EXPIRED = "lease_expired"
    JOB_CANCELLED = "job_cancelled"
    ACTOR_STATE_CHANGED = "actor_state_changed"


class OrchestratorEvent(BaseModel):
    """A lifecycle event published on the bus."""

    type: EventType
    job_id: Optional[UUID] = None
    kind: Optional[str] = None
    entity_id: Optional[str] = None
    attempt_count: Optional[int] = None
    error: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_job(cls, type: EventType, job: Job, **data: Any) -> "OrchestratorEvent":
        """Build an event describing ``job``."""
        return cls(
            type=type,
            job_id=job.id,
            kind=job.kind_name,
            entity_id=job.owner_entity_id,
            attempt_count=job.attempt_count,
            error=job.last_error,
            data=data,
        )


Topic = Union[EventType, str]

_CLOSED = object()


class Subscription:
    """
    A subscriber's view of the bus.

    Events are buffered in an unbounded queue, so publishing never blocks.
    Iterate with ``async for``; iteration ends after ``close()``.
    """

    def __init__(self, bus: "EventBus", topics: Optional[frozenset]):
        self._bus = bus
        self.topics = topics
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: OrchestratorEvent) -> bool:
        return self.topics is None or event.type in self.topics

    def deliver(self, event: OrchestratorEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        """Number of events buffered and not yet consumed."""
        return self._queue.qsize()

    async def get(self) -> OrchestratorEvent:
        """Wait for the next event. Raises StopAsyncIteration once closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> OrchestratorEvent:
        return await self.get()


class EventBus:
    """
    Fan-out publisher of OrchestratorEvents.

    Delivery is at-least-once within the process and preserves publish order
    per subscriber. Subscribers that only care about some topics pass them to
    ``subscribe``.

    Example:
        ```python
        bus = EventBus()
        sub = bus.subscribe(EventType.JOB_COMPLETED)
        async for event in sub:
            print(event.job_id)
        ```
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self, topics: Optional[Union[Topic, Iterable[Topic]]] = None
    ) -> Subscription:
        """Subscribe to one topic, several topics, or everything (``None``)."""
        if topics is None:
            topic_set = None
        elif isinstance(topics, (EventType, str)):
            topic_set = frozenset({EventType(topics)})
        else:
            topic_set = frozenset(EventType(topic) for topic in topics)

        subscription = Subscription(self, topic_set)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: OrchestratorEvent) -> None:
        """Deliver an event to every matching subscriber."""
        self.logger.debug(
            f"Publishing {event.type.value} job={event.job_id} entity={event.entity_id}"
        )
        for subscription in list(self._subscriptions):
            if subscription.matches(event):
                subscription.deliver(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
