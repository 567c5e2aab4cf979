"""Ordered publish/subscribe stream of pipeline progress events."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from agent_pipeline.orchestrator.models import TaskRecord

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of orchestrator notifications."""

    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"
    PAUSED = "paused"
    MESSAGE = "message"


@dataclass(slots=True)
class PipelineEvent:
    """One notification; ``tasks`` is a snapshot taken at publish time."""

    kind: EventKind
    tasks: list[TaskRecord] = field(default_factory=list)
    current_index: int | None = None
    message: str | None = None
    execution_id: str | None = None


class Subscription:
    """Per-subscriber queue; iterate it to receive events until the stream closes."""

    def __init__(self, stream: PipelineEventStream) -> None:
        self._stream = stream
        self._queue: queue.Queue[PipelineEvent | None] = queue.Queue()

    def _put(self, item: PipelineEvent | None) -> None:
        self._queue.put(item)

    def get(self, timeout: float | None = None) -> PipelineEvent | None:
        """Return the next event, or None once the stream is closed.

        Raises:
            queue.Empty: no event arrived within ``timeout``.
        """

        return self._queue.get(timeout=timeout)

    def drain(self) -> list[PipelineEvent]:
        """Return every event already queued without blocking."""

        events: list[PipelineEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is None:
                return events
            events.append(item)

    def close(self) -> None:
        self._stream.unsubscribe(self)

    def __iter__(self) -> Iterator[PipelineEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class PipelineEventStream:
    """Fan-out of orchestrator events to any number of subscribers.

    Each subscriber gets its own queue, so publish order is preserved per subscriber
    and a slow consumer never blocks the orchestrator thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscription] = []
        self._closed = False

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        with self._lock:
            if self._closed:
                subscription._put(None)
            else:
                self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
        subscription._put(None)

    def publish(self, event: PipelineEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        logger.debug("Publishing %s event to %d subscribers", event.kind.value, len(subscribers))
        for subscription in subscribers:
            subscription._put(event)

    def close(self) -> None:
        """Signal end of stream; iterating subscribers stop after pending events."""

        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
            self._closed = True
        for subscription in subscribers:
            subscription._put(None)
