import asyncio
import inspect
import itertools
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Type

from soramimi.app.events.base_event import BaseEvent, EventPriority

logger = logging.getLogger(__name__)


class EventBus:
    """Asynchronous event bus with priority-based event processing.

    Events are queued on an asyncio priority queue and dispatched by a single
    worker task to every handler subscribed to the event's type (matched with
    isinstance). Handlers may be sync or async. Publishing is possible from
    coroutines (``publish``), from sync code running on the loop
    (``publish_nowait``) and from foreign threads (``publish_threadsafe``).

    Under load, NORMAL and LOW priority events are dropped once the queue holds
    ``max_queue_size`` items; CRITICAL and HIGH events are always accepted.

    Attributes:
        _subscribers: Dictionary mapping event types to lists of handler callables.
        _event_queue: Priority queue ordering events by priority and insertion order.
        _worker_task: Background task processing events from the queue.
        _is_shutting_down: Flag indicating shutdown has been initiated.
        _loop: Loop the worker runs on, used for thread-safe publishing.
        _max_queue_size: Maximum queue size before backpressure kicks in.
    """

    def __init__(self, idle_sleep: float = 0.005, max_queue_size: int = 200) -> None:
        """Initialize the event bus.

        Args:
            idle_sleep: Seconds to sleep after an event when the queue is empty.
            max_queue_size: Maximum queue size before dropping NORMAL/LOW events.
        """
        self._subscribers: Dict[Type[BaseEvent], List[Callable[[BaseEvent], Any]]] = defaultdict(list)
        self._event_queue: Optional[asyncio.PriorityQueue] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._is_shutting_down: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._idle_sleep: float = idle_sleep
        self._counter: itertools.count = itertools.count()
        self._subscribers_lock: threading.RLock = threading.RLock()

        self._max_queue_size: int = max_queue_size
        self._events_dropped: int = 0
        self._events_processed: int = 0

    def _queue(self) -> asyncio.PriorityQueue:
        if self._event_queue is None:
            self._event_queue = asyncio.PriorityQueue()
        return self._event_queue

    def publish_nowait(self, event: BaseEvent) -> bool:
        """Queue an event from synchronous code running on the bus loop.

        Args:
            event: BaseEvent subclass instance to publish.

        Returns:
            True if the event was queued, False if it was rejected or dropped.
        """
        if self._is_shutting_down:
            logger.debug(f"Rejecting event {type(event).__name__} during shutdown")
            return False

        if not isinstance(event, BaseEvent):
            logger.error(f"Event data must be a subclass of BaseEvent, got {type(event)}")
            return False

        queue = self._queue()
        queue_size = queue.qsize()

        if queue_size >= self._max_queue_size:
            if event.priority >= EventPriority.NORMAL:
                self._events_dropped += 1
                logger.warning(
                    f"Queue full ({queue_size}/{self._max_queue_size}) - dropping {type(event).__name__} "
                    f"(priority={event.priority}, total_dropped={self._events_dropped})"
                )
                return False
            logger.error(
                f"Queue full ({queue_size}/{self._max_queue_size}) but forcing {type(event).__name__} "
                f"(priority={event.priority})"
            )

        queue.put_nowait((event.priority, next(self._counter), event))

        if queue_size > self._max_queue_size * 0.75:
            logger.warning(f"Event queue at 75% capacity: {queue_size}/{self._max_queue_size} events")
        return True

    async def publish(self, event: BaseEvent) -> None:
        """Publish an event to the priority queue for asynchronous processing.

        Args:
            event: BaseEvent subclass instance to publish to subscribers.
        """
        self.publish_nowait(event)

    def publish_threadsafe(self, event: BaseEvent) -> None:
        """Publish an event from a thread other than the bus loop thread.

        Silently ignored once the bus loop is gone, since late notifications from
        audio threads during shutdown are expected.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"No running bus loop, dropping {type(event).__name__}")
            return
        try:
            loop.call_soon_threadsafe(self.publish_nowait, event)
        except RuntimeError as e:
            logger.debug(f"Event loop closed while publishing {type(event).__name__}: {e}")

    def subscribe(self, event_type: Type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> None:
        """Subscribe a handler to receive events of a specific type.

        Args:
            event_type: BaseEvent subclass to subscribe to (matches via isinstance).
            handler: Callable accepting a single event parameter, sync or async.
        """
        if not inspect.isclass(event_type) or not issubclass(event_type, BaseEvent):
            logger.error(f"Can only subscribe to subclasses of BaseEvent, got {event_type}")
            return

        if not callable(handler):
            logger.error(f"Handler must be callable, got {type(handler)}")
            return

        logger.debug(f"Subscribing handler {getattr(handler, '__name__', handler)} to event type: {event_type.__name__}")
        with self._subscribers_lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: Type[BaseEvent], handler: Callable[[BaseEvent], Any]) -> None:
        """Remove a previously subscribed handler; unknown handlers are ignored."""
        with self._subscribers_lock:
            handlers = self._subscribers.get(event_type)
            if handlers and handler in handlers:
                handlers.remove(handler)

    async def _dispatch(self, event: BaseEvent) -> None:
        event_type = type(event)
        with self._subscribers_lock:
            handlers_to_call = [
                handler
                for subscribed_type, handlers in self._subscribers.items()
                if isinstance(event, subscribed_type)
                for handler in handlers
            ]

        if not handlers_to_call:
            logger.debug(f"No handlers registered for event '{event_type.__name__}'")
            return

        for handler in handlers_to_call:
            handler_name = getattr(handler, "__name__", str(handler))
            try:
                handler_start = time.monotonic()
                result = handler(event)
                if inspect.isawaitable(result):
                    await result

                handler_time = time.monotonic() - handler_start
                if handler_time > 0.1:
                    logger.warning(f"Slow handler {handler_name} for event '{event_type.__name__}': {handler_time:.4f}s")
            except Exception as e:
                logger.error(f"Error in handler {handler_name} for event '{event_type.__name__}': {e}", exc_info=True)

    async def _process_events(self) -> None:
        """Process events from the priority queue until shutdown or cancellation."""
        logger.debug("Event processing worker started")
        queue = self._queue()

        while not self._is_shutting_down:
            try:
                _, _, event = await queue.get()
                try:
                    await self._dispatch(event)
                    self._events_processed += 1
                finally:
                    queue.task_done()

                if queue.qsize() == 0:
                    await asyncio.sleep(self._idle_sleep)
                else:
                    await asyncio.sleep(0)

            except asyncio.CancelledError:
                logger.debug("Event processing worker cancelled")
                break
            except Exception as e:
                logger.critical(f"Fatal error in event processing worker: {e}", exc_info=True)
                if not self._is_shutting_down:
                    await asyncio.sleep(1)

    async def start_worker(self) -> None:
        """Start the event processing worker task if not already running."""
        if self._is_shutting_down:
            logger.debug("Not starting worker during shutdown")
            return

        self._loop = asyncio.get_running_loop()
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._process_events())
            logger.debug("Event bus worker started")
        else:
            logger.debug("Event bus worker already running")

    async def drain(self, timeout: float = 2.0) -> bool:
        """Wait until every queued event has been dispatched.

        Returns:
            True if the queue drained within ``timeout`` seconds.
        """
        try:
            await asyncio.wait_for(self._queue().join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop_worker(self) -> None:
        """Drain the queue (bounded), stop the worker and clear all subscribers."""
        if not await self.drain(timeout=2.0):
            remaining = self._queue().qsize()
            logger.warning(f"Could not process all events before shutdown. {remaining} events discarded.")

        self._is_shutting_down = True

        if self._worker_task and not self._worker_task.done():
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                logger.debug("Event bus worker successfully stopped")

        with self._subscribers_lock:
            logger.debug(f"Clearing {len(self._subscribers)} subscriber lists")
            self._subscribers.clear()

    def get_stats(self) -> Dict[str, Any]:
        """Get current event bus statistics for monitoring and debugging.

        Returns:
            Dictionary with keys: queue_size, max_queue_size, events_dropped,
            events_processed, subscribers, worker_status, is_shutting_down.
        """
        worker_status = "running"
        if self._worker_task is None:
            worker_status = "not_created"
        elif self._worker_task.done():
            worker_status = "cancelled" if self._worker_task.cancelled() else "stopped"

        with self._subscribers_lock:
            subscribers = {event.__name__: len(handlers) for event, handlers in self._subscribers.items()}

        return {
            "queue_size": self._event_queue.qsize() if self._event_queue is not None else 0,
            "max_queue_size": self._max_queue_size,
            "events_dropped": self._events_dropped,
            "events_processed": self._events_processed,
            "subscribers": subscribers,
            "worker_status": worker_status,
            "is_shutting_down": self._is_shutting_down,
        }
