from __future__ import annotations

import queue
import threading

import allure
import pytest

from agent_pipeline.orchestrator.events import EventKind, PipelineEvent, PipelineEventStream

pytestmark = [
    allure.epic("Pipeline Execution"),
    allure.feature("Progress Events"),
]


def test_each_subscriber_receives_events_in_publish_order() -> None:
    stream = PipelineEventStream()
    first = stream.subscribe()
    second = stream.subscribe()

    for index in range(3):
        stream.publish(PipelineEvent(kind=EventKind.PROGRESS, current_index=index))
    stream.publish(PipelineEvent(kind=EventKind.COMPLETE, message="done"))

    for subscription in (first, second):
        received = subscription.drain()
        assert [event.current_index for event in received] == [0, 1, 2, None]
        assert received[-1].kind == EventKind.COMPLETE


def test_unsubscribed_consumer_stops_receiving() -> None:
    stream = PipelineEventStream()
    subscription = stream.subscribe()

    subscription.close()
    stream.publish(PipelineEvent(kind=EventKind.MESSAGE, message="ignored"))

    assert subscription.get(timeout=1) is None
    with pytest.raises(queue.Empty):
        subscription.get(timeout=0.01)


def test_iteration_ends_when_stream_closes() -> None:
    stream = PipelineEventStream()
    subscription = stream.subscribe()
    collected: list[EventKind] = []

    consumer = threading.Thread(
        target=lambda: collected.extend(event.kind for event in subscription),
    )
    consumer.start()
    stream.publish(PipelineEvent(kind=EventKind.PROGRESS, current_index=0))
    stream.publish(PipelineEvent(kind=EventKind.PAUSED, message="paused"))
    stream.close()
    consumer.join(timeout=5)

    assert not consumer.is_alive()
    assert collected == [EventKind.PROGRESS, EventKind.PAUSED]


def test_subscribe_after_close_yields_closed_subscription() -> None:
    stream = PipelineEventStream()
    stream.close()

    subscription = stream.subscribe()

    assert list(subscription) == []


def test_drain_stops_at_end_of_stream() -> None:
    stream = PipelineEventStream()
    subscription = stream.subscribe()

    stream.publish(PipelineEvent(kind=EventKind.MESSAGE, message="before close"))
    stream.close()

    assert [event.message for event in subscription.drain()] == ["before close"]
    assert subscription.drain() == []
