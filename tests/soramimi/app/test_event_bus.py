import asyncio
import threading

import pytest

from soramimi.app.event_bus import EventBus
from soramimi.app.events.base_event import BaseEvent, EventPriority
from soramimi.app.events.replay_events import ManualReplayRequestEvent, ReplaySkippedEvent
from soramimi.app.events.session_events import ArchiveSizeUpdatedEvent, SessionControlEvent


@pytest.mark.asyncio
async def test_sync_and_async_handlers_receive_events(event_bus):
    received = []

    def sync_handler(event):
        received.append(("sync", event))

    async def async_handler(event):
        received.append(("async", event))

    event_bus.subscribe(ManualReplayRequestEvent, sync_handler)
    event_bus.subscribe(ManualReplayRequestEvent, async_handler)
    await event_bus.start_worker()

    event = ManualReplayRequestEvent()
    await event_bus.publish(event)
    assert await event_bus.drain(timeout=1.0)

    assert received == [("sync", event), ("async", event)]
    await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_subscribers_to_base_class_receive_subclasses(event_bus):
    received = []
    event_bus.subscribe(BaseEvent, received.append)
    await event_bus.start_worker()

    event_bus.publish_nowait(ReplaySkippedEvent(source="manual", reason="archive empty"))
    await event_bus.drain(timeout=1.0)

    assert len(received) == 1
    await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_higher_priority_events_are_dispatched_first(event_bus):
    order = []
    event_bus.subscribe(BaseEvent, lambda event: order.append(event.priority))

    event_bus.publish_nowait(ArchiveSizeUpdatedEvent(segment_count=1, duration_seconds=0.1))
    event_bus.publish_nowait(ReplaySkippedEvent(source="manual", reason="x"))
    event_bus.publish_nowait(SessionControlEvent(command="stop"))
    await event_bus.start_worker()
    await event_bus.drain(timeout=1.0)

    assert order == [EventPriority.CRITICAL, EventPriority.NORMAL, EventPriority.LOW]
    await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_backpressure_drops_low_priority_but_keeps_critical():
    bus = EventBus(max_queue_size=2)

    assert bus.publish_nowait(ArchiveSizeUpdatedEvent(segment_count=1, duration_seconds=0.1))
    assert bus.publish_nowait(ArchiveSizeUpdatedEvent(segment_count=2, duration_seconds=0.2))
    assert not bus.publish_nowait(ArchiveSizeUpdatedEvent(segment_count=3, duration_seconds=0.3))
    assert bus.publish_nowait(SessionControlEvent(command="stop"))

    stats = bus.get_stats()
    assert stats["events_dropped"] == 1
    assert stats["queue_size"] == 3


@pytest.mark.asyncio
async def test_non_events_are_rejected(event_bus):
    assert not event_bus.publish_nowait({"command": "start"})


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(event_bus):
    received = []

    def failing(event):
        raise RuntimeError("handler failed")

    event_bus.subscribe(ManualReplayRequestEvent, failing)
    event_bus.subscribe(ManualReplayRequestEvent, received.append)
    await event_bus.start_worker()

    event_bus.publish_nowait(ManualReplayRequestEvent())
    await event_bus.drain(timeout=1.0)

    assert len(received) == 1
    assert event_bus.get_stats()["events_processed"] == 1
    await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(event_bus):
    received = []
    event_bus.subscribe(ManualReplayRequestEvent, received.append)
    event_bus.unsubscribe(ManualReplayRequestEvent, received.append)
    await event_bus.start_worker()

    event_bus.publish_nowait(ManualReplayRequestEvent())
    await event_bus.drain(timeout=1.0)

    assert received == []
    await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_publish_threadsafe_from_foreign_thread(event_bus):
    received = []
    event_bus.subscribe(ManualReplayRequestEvent, received.append)
    await event_bus.start_worker()

    thread = threading.Thread(target=event_bus.publish_threadsafe, args=(ManualReplayRequestEvent(),))
    thread.start()
    thread.join()
    await asyncio.sleep(0.05)
    await event_bus.drain(timeout=1.0)

    assert len(received) == 1
    await event_bus.stop_worker()


@pytest.mark.asyncio
async def test_stop_worker_rejects_further_events(event_bus):
    event_bus.subscribe(ManualReplayRequestEvent, lambda event: None)
    await event_bus.start_worker()

    await event_bus.stop_worker()

    stats = event_bus.get_stats()
    assert stats["is_shutting_down"]
    assert stats["subscribers"] == {}
    assert stats["worker_status"] in ("cancelled", "stopped")
    assert not event_bus.publish_nowait(ManualReplayRequestEvent())


def test_publish_threadsafe_without_loop_is_ignored(event_bus):
    event_bus.publish_threadsafe(ManualReplayRequestEvent())

    assert event_bus.get_stats()["queue_size"] == 0
