from enum import IntEnum

from pydantic import BaseModel


class EventPriority(IntEnum):
    """Priority levels for event processing in the event bus.

    Lower numeric values are dequeued first.

    Attributes:
        CRITICAL: Session control and shutdown.
        HIGH: Replay lifecycle notifications.
        NORMAL: Default for status and diagnostics.
        LOW: High-frequency status such as archive size and input level.
    """

    CRITICAL = 10
    HIGH = 20
    NORMAL = 50
    LOW = 80


class BaseEvent(BaseModel):
    """Root of the event hierarchy; everything published on the EventBus inherits from it.

    Attributes:
        priority: EventPriority level determining processing order (default NORMAL).
    """

    priority: EventPriority = EventPriority.NORMAL
