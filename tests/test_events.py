import asyncio
import threading

import pytest

from robium_engine.events import EventBus
from robium_engine.identity import identity

A = identity("p", "w", "a")
B = identity("p", "w", "b")


def test_publish_assigns_sequence_and_keeps_history():
    bus = EventBus()
    e1 = bus.publish(A, None, "created")
    e2 = bus.publish(A, "created", "starting")
    assert (e1.sequence, e2.sequence) == (1, 2)
    assert [e.new_state for e in bus.get_events()] == ["created", "starting"]
    assert [e.sequence for e in bus.get_events(since_sequence=1)] == [2]


def test_history_is_bounded():
    bus = EventBus(max_history=3)
    for i in range(5):
        bus.publish(A, None, f"s{i}")
    assert [e.new_state for e in bus.get_events()] == ["s2", "s3", "s4"]


def test_filter_by_identity():
    bus = EventBus()
    bus.publish(A, None, "created")
    bus.publish(B, None, "created")
    assert [e.identity for e in bus.get_events(identity=B)] == [B]


def test_subscriber_errors_do_not_break_publishing():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("nope")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(seen.append)
    bus.publish(A, None, "created")
    unsubscribe()
    bus.publish(A, "created", "starting")
    assert len(seen) == 1


def test_event_dict_shape():
    event = EventBus().publish(A, "running", "failed", error="exited")
    data = event.to_dict()
    assert data["identity"]["name"] == A.name
    assert data["old_state"] == "running"
    assert data["new_state"] == "failed"
    assert data["error"] == "exited"
    assert data["timestamp"].endswith("+00:00")


@pytest.mark.asyncio
async def test_stream_receives_events_from_other_threads():
    bus = EventBus()
    bus.publish(A, None, "created")

    received = []

    async def consume():
        async for event in bus.stream(identity=A, replay=True):
            received.append(event.new_state)
            if len(received) == 3:
                break

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.05)

    def producer():
        bus.publish(B, None, "created")
        bus.publish(A, "created", "starting")
        bus.publish(A, "starting", "running")

    thread = threading.Thread(target=producer)
    thread.start()
    await asyncio.wait_for(task, timeout=2)
    thread.join()

    assert received == ["created", "starting", "running"]
