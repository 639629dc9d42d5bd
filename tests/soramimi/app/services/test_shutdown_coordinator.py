import asyncio
import threading

import pytest

from soramimi.app.events.session_events import ApplicationShutdownRequestedEvent
from soramimi.app.services.shutdown_coordinator import ShutdownCoordinator


@pytest.mark.asyncio
async def test_first_request_wins(recording_bus):
    coordinator = ShutdownCoordinator(event_bus=recording_bus, loop=asyncio.get_running_loop())

    assert coordinator.request_shutdown(reason="Operator quit", source="console")
    assert not coordinator.request_shutdown(reason="Received system signal 2", source="signal_handler")

    await asyncio.wait_for(coordinator.wait_for_shutdown(), timeout=1.0)
    assert coordinator.is_shutdown_requested()
    events = recording_bus.events_of(ApplicationShutdownRequestedEvent)
    assert [event.source for event in events] == ["console"]


@pytest.mark.asyncio
async def test_request_from_another_thread(recording_bus):
    coordinator = ShutdownCoordinator(event_bus=recording_bus, loop=asyncio.get_running_loop())

    request = {"reason": "Console input closed", "source": "console"}
    thread = threading.Thread(target=coordinator.request_shutdown, kwargs=request)
    thread.start()
    thread.join()

    await asyncio.wait_for(coordinator.wait_for_shutdown(), timeout=1.0)
    assert len(recording_bus.events_of(ApplicationShutdownRequestedEvent)) == 1
