import asyncio
import logging
import threading
from typing import Optional

from soramimi.app.event_bus import EventBus
from soramimi.app.events.session_events import ApplicationShutdownRequestedEvent


class ShutdownCoordinator:
    """Single source of truth for shutdown state.

    Thread-safe and idempotent: signal handlers, the keyboard reader and the
    main coroutine may all request shutdown; only the first request counts.
    """

    def __init__(
        self,
        event_bus: EventBus,
        loop: asyncio.AbstractEventLoop,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.event_bus: EventBus = event_bus
        self.loop: asyncio.AbstractEventLoop = loop
        self.logger: logging.Logger = logger or logging.getLogger(__name__)

        self._shutdown_requested: bool = False
        self._shutdown_lock: threading.Lock = threading.Lock()
        self._shutdown_event: asyncio.Event = asyncio.Event()

    def request_shutdown(self, reason: str, source: str) -> bool:
        """Request application shutdown from any thread.

        Returns:
            True if this is the first shutdown request, False if already shutting down.
        """
        with self._shutdown_lock:
            if self._shutdown_requested:
                self.logger.debug(f"Shutdown already in progress. Ignoring duplicate request from {source}")
                return False
            self._shutdown_requested = True

        self.logger.info(f"Shutdown requested: {reason} (source: {source})")

        if self.loop.is_closed():
            return True

        def _notify() -> None:
            self.event_bus.publish_nowait(ApplicationShutdownRequestedEvent(reason=reason, source=source))
            self._shutdown_event.set()

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            _notify()
        else:
            try:
                self.loop.call_soon_threadsafe(_notify)
            except RuntimeError as e:
                self.logger.debug(f"Event loop closed during shutdown request: {e}")
        return True

    def is_shutdown_requested(self) -> bool:
        with self._shutdown_lock:
            return self._shutdown_requested

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()
