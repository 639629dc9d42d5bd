from typing import Literal

from pydantic import Field

from soramimi.app.events.base_event import BaseEvent, EventPriority

ReplaySource = Literal["probabilistic", "guarantee", "manual"]


class ManualReplayRequestEvent(BaseEvent):
    """Operator request to replay a fragment right now."""

    priority: EventPriority = EventPriority.HIGH


class SelectionDiagnosticsEvent(BaseEvent):
    """Details of a fragment selection.

    Attributes:
        start_index: Archive position the fragment starts at.
        candidate_count: Segments outside the exclusion window (0 when degraded).
        archive_length: Archive size at selection time.
        degraded: True when no segment was old enough and the whole archive was used.
        duration_sec: Requested fragment duration.
        target_samples: Requested sample count after quantization to whole blocks.
        copied_samples: Samples actually copied (may be fewer than requested).
    """

    start_index: int
    candidate_count: int
    archive_length: int
    degraded: bool
    duration_sec: float
    target_samples: int
    copied_samples: int
    priority: EventPriority = EventPriority.NORMAL


class ReplayStartedEvent(BaseEvent):
    """A replay chain has started playing.

    Attributes:
        chain_id: Identifier of the playback chain.
        source: Which trigger requested the replay.
        duration_sec: Playback length in seconds.
        pan: Stereo position in [-1, 1].
        cutoff_hz: Low-pass cutoff frequency.
    """

    chain_id: str
    source: ReplaySource
    duration_sec: float
    pan: float
    cutoff_hz: float
    priority: EventPriority = EventPriority.HIGH


class ReplayCueEvent(BaseEvent):
    """Visual cue for presentation collaborators, emitted when a replay starts."""

    chain_id: str
    cue: str = Field(default="flash", description="Cue name understood by the presentation layer")
    priority: EventPriority = EventPriority.HIGH


class ReplayEndedEvent(BaseEvent):
    """A replay chain finished playing and was torn down."""

    chain_id: str
    source: ReplaySource
    priority: EventPriority = EventPriority.HIGH


class ReplaySkippedEvent(BaseEvent):
    """A replay was requested but its preconditions were not met."""

    source: ReplaySource
    reason: str
    priority: EventPriority = EventPriority.NORMAL


class PlaybackFailedEvent(BaseEvent):
    """Building or starting a replay chain failed; the invocation was abandoned."""

    source: ReplaySource
    error: str
    priority: EventPriority = EventPriority.HIGH


class GuaranteeScheduledEvent(BaseEvent):
    """Next guaranteed replay attempt has been scheduled."""

    delay_ms: int
    first: bool
    priority: EventPriority = EventPriority.LOW
