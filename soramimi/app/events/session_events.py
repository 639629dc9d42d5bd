from typing import Any, Dict, Literal, Optional

from pydantic import Field

from soramimi.app.events.base_event import BaseEvent, EventPriority


class SessionControlEvent(BaseEvent):
    """Request to start or stop the capture session.

    Attributes:
        command: Session action (start or stop).
    """

    command: Literal["start", "stop"] = Field(..., description="Session action")
    priority: EventPriority = EventPriority.CRITICAL


class SessionStatusEvent(BaseEvent):
    """Session lifecycle status for status displays.

    Attributes:
        status: New lifecycle status.
        message: Optional human-readable detail (error text on failure).
        sample_rate: Active sample rate while capturing.
    """

    status: Literal["starting", "capturing", "stopping", "stopped", "error"]
    message: Optional[str] = None
    sample_rate: Optional[int] = None
    priority: EventPriority = EventPriority.HIGH


class ArchiveSizeUpdatedEvent(BaseEvent):
    """Throttled report of the archive contents.

    Attributes:
        segment_count: Segments currently retained.
        duration_seconds: Audio duration those segments represent.
    """

    segment_count: int
    duration_seconds: float
    priority: EventPriority = EventPriority.LOW


class InputLevelEvent(BaseEvent):
    """Occasional RMS level of the most recent captured block, to confirm input is live."""

    rms: float
    segment_count: int
    priority: EventPriority = EventPriority.LOW


class TriggerSettingsUpdatedEvent(BaseEvent):
    """Runtime change to trigger settings from a configuration surface.

    Keys are setting paths such as ``trigger.trigger_probability`` or
    ``trigger.check_interval_ms``.
    """

    updated_settings: Dict[str, Any]
    priority: EventPriority = EventPriority.NORMAL


class TriggerConfigChangedEvent(BaseEvent):
    """Published after a trigger setting has been applied.

    Attributes:
        check_interval_ms: Effective probabilistic check period.
        trigger_probability: Effective probability per check.
    """

    check_interval_ms: int
    trigger_probability: float
    priority: EventPriority = EventPriority.NORMAL


class ApplicationShutdownRequestedEvent(BaseEvent):
    """Application shutdown has been requested."""

    reason: str
    source: str
    priority: EventPriority = EventPriority.CRITICAL
