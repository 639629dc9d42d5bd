from typing import List, Type
from unittest.mock import Mock, patch

import numpy as np
import pytest

from soramimi.app.config.app_config import GlobalAppConfig
from soramimi.app.errors import CaptureAcquisitionError
from soramimi.app.event_bus import EventBus
from soramimi.app.events.base_event import BaseEvent
from soramimi.app.services.audio.archive_buffer import ArchiveBuffer, Segment


class RecordingEventBus(EventBus):
    """EventBus that also remembers every event handed to publish_nowait."""

    def __init__(self) -> None:
        super().__init__()
        self.published: List[BaseEvent] = []

    def publish_nowait(self, event: BaseEvent) -> bool:
        self.published.append(event)
        return super().publish_nowait(event)

    def events_of(self, event_type: Type[BaseEvent]) -> List[BaseEvent]:
        return [event for event in self.published if isinstance(event, event_type)]


class FakeRecorder:
    """Capture source stand-in; blocks are delivered by calling session.on_block directly."""

    fail_on_start = False

    def __init__(self, audio_config, on_block=None) -> None:
        self.audio_config = audio_config
        self.on_block = on_block
        self.started = False
        self.stopped = False

    def start(self) -> None:
        if self.fail_on_start:
            raise CaptureAcquisitionError("No input device available")
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def is_recording(self) -> bool:
        return self.started and not self.stopped


@pytest.fixture
def app_config():
    """Create application configuration for testing."""
    config = GlobalAppConfig()
    config.replay.test_tone_enabled = False
    return config


@pytest.fixture
def event_bus():
    """Create event bus for testing."""
    bus = EventBus()
    return bus


@pytest.fixture
def recording_bus():
    return RecordingEventBus()


@pytest.fixture
def block_size():
    return 4096


@pytest.fixture
def make_archive(block_size):
    """Build an archive whose segment i is filled with the value i and captured at i * spacing_ms."""

    def _make(count: int, capacity: int = 300, spacing_ms: float = 100.0) -> ArchiveBuffer:
        archive = ArchiveBuffer(capacity=capacity)
        for i in range(count):
            archive.append(Segment.from_block(np.full(block_size, float(i), dtype=np.float32), i * spacing_ms))
        return archive

    return _make


@pytest.fixture
def output_stream():
    stream = Mock()
    stream.active = True
    return stream


@pytest.fixture
def patched_output(output_stream):
    """Route OutputMixer device access to a mock stream."""
    with patch("soramimi.app.services.audio.devices.open_output_stream", return_value=output_stream) as opener:
        yield opener


@pytest.fixture
def fake_recorder_cls():
    return FakeRecorder
