import asyncio
import logging
import math
import random
from enum import Enum
from typing import Callable, Optional, Set

import numpy as np

from soramimi.app.config.app_config import MIN_CHECK_INTERVAL_MS, AudioConfig, GlobalAppConfig
from soramimi.app.errors import CaptureAcquisitionError, EmptyArchiveError
from soramimi.app.event_bus import EventBus
from soramimi.app.events.replay_events import (
    GuaranteeScheduledEvent,
    ManualReplayRequestEvent,
    ReplaySkippedEvent,
    ReplaySource,
    SelectionDiagnosticsEvent,
)
from soramimi.app.events.session_events import (
    ArchiveSizeUpdatedEvent,
    InputLevelEvent,
    SessionControlEvent,
    SessionStatusEvent,
    TriggerConfigChangedEvent,
)
from soramimi.app.services.audio.archive_buffer import ArchiveBuffer, Segment
from soramimi.app.services.audio.fragment_selector import FragmentSelector
from soramimi.app.services.audio.output_mixer import OutputMixer
from soramimi.app.services.audio.playback_chain import PlaybackChainBuilder, ReplayChain
from soramimi.app.services.audio.recorder import AudioRecorder
from soramimi.app.services.clock import AsyncioClock, Clock
from soramimi.app.services.trigger_scheduler import TriggerScheduler

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    CAPTURING = "capturing"
    STOPPING = "stopping"


def _default_mixer_factory(audio: AudioConfig) -> OutputMixer:
    return OutputMixer(
        sample_rate=audio.sample_rate,
        device=audio.output_device,
        monitoring_enabled=audio.monitoring_enabled,
        monitoring_gain=audio.monitoring_gain,
        block_size=audio.buffer_size,
    )


class SoramimiSession:
    """Owns one capture session: archive, selector, playback chains and scheduler.

    Everything per-session is created in :meth:`start` and dropped in :meth:`stop`;
    only the configuration outlives a session. Archive writes, selection and all
    scheduler activity happen on the event loop thread. The recorder thread only
    feeds the output mixer's monitoring path directly and posts blocks to the loop
    with ``call_soon_threadsafe``.

    Attributes:
        config: Global configuration; ``config.trigger`` is updated live.
        state: Current lifecycle state.
        archive: Archive of the running session (None while idle).
        scheduler: Trigger scheduler of the running session (None while idle).
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: GlobalAppConfig,
        clock: Optional[Clock] = None,
        recorder_factory: Optional[Callable[..., AudioRecorder]] = None,
        mixer_factory: Optional[Callable[[AudioConfig], OutputMixer]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize an idle session.

        Args:
            event_bus: Bus receiving every status and replay notification.
            config: Global configuration.
            clock: Time source and timers (defaults to an AsyncioClock on the running loop).
            recorder_factory: Builds the capture source; called with (audio_config, on_block=...).
            mixer_factory: Builds the output sink from the audio config.
            rng: Shared random source for selection, processing and scheduling.
        """
        self._event_bus = event_bus
        self.config = config
        self._clock = clock
        self._recorder_factory = recorder_factory or AudioRecorder
        self._mixer_factory = mixer_factory or _default_mixer_factory
        self._rng = rng or random.Random()

        self.state = SessionState.IDLE
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.archive: Optional[ArchiveBuffer] = None
        self.scheduler: Optional[TriggerScheduler] = None
        self._selector: Optional[FragmentSelector] = None
        self._builder: Optional[PlaybackChainBuilder] = None
        self._recorder: Optional[AudioRecorder] = None
        self._mixer: Optional[OutputMixer] = None
        self._active_chains: Set[ReplayChain] = set()

    @property
    def is_capturing(self) -> bool:
        return self.state == SessionState.CAPTURING

    @property
    def active_chains(self) -> Set[ReplayChain]:
        return set(self._active_chains)

    def setup_subscriptions(self) -> None:
        self._event_bus.subscribe(event_type=SessionControlEvent, handler=self._handle_session_control)
        self._event_bus.subscribe(event_type=ManualReplayRequestEvent, handler=self._handle_manual_replay)
        logger.debug("Session subscriptions configured")

    async def start(self) -> bool:
        """Acquire capture and output devices, then start archiving and scheduling.

        Returns:
            True if the session started, False if it was not idle.

        Raises:
            CaptureAcquisitionError: If a device could not be opened. Nothing is left
                running in that case and the scheduler was never started.
        """
        if self.state != SessionState.IDLE:
            logger.info(f"Start ignored, session is {self.state.value}")
            return False

        self.state = SessionState.STARTING
        self._event_bus.publish_nowait(SessionStatusEvent(status="starting"))

        self._loop = asyncio.get_running_loop()
        if self._clock is None:
            self._clock = AsyncioClock(self._loop)

        audio = self.config.audio
        mixer = None
        recorder = None
        try:
            mixer = self._mixer_factory(audio)
            mixer.start(self._loop)
            recorder = self._recorder_factory(audio, on_block=self._on_block_from_capture_thread)
            self._mixer = mixer
            self.archive = ArchiveBuffer(capacity=self.config.archive.max_segments)
            recorder.start()
        except Exception as e:
            logger.error(f"Session start failed: {e}")
            if recorder is not None:
                recorder.stop()
            if mixer is not None:
                mixer.close()
            self._mixer = None
            self.archive = None
            self.state = SessionState.IDLE
            self._event_bus.publish_nowait(SessionStatusEvent(status="error", message=str(e)))
            if isinstance(e, CaptureAcquisitionError):
                raise
            raise CaptureAcquisitionError(f"Audio setup failed: {e}") from e

        self._recorder = recorder
        self._selector = FragmentSelector(
            sample_rate=audio.sample_rate,
            block_size=audio.buffer_size,
            exclude_recent_ms=self.config.archive.exclude_recent_ms,
            min_duration_sec=self.config.replay.segment_min_sec,
            max_duration_sec=self.config.replay.segment_max_sec,
            rng=self._rng,
        )
        self._builder = PlaybackChainBuilder(mixer, self._event_bus, self.config.replay, rng=self._rng)
        self.scheduler = TriggerScheduler(
            clock=self._clock,
            config=self.config.trigger,
            archive_size=self._archive_size,
            on_trigger=self.trigger_replay,
            on_guarantee_scheduled=self._on_guarantee_scheduled,
            rng=self._rng,
        )

        self.state = SessionState.CAPTURING
        self.scheduler.start()
        self._builder.play_test_tone()

        self._event_bus.publish_nowait(SessionStatusEvent(status="capturing", sample_rate=audio.sample_rate))
        logger.info(f"Session capturing at {audio.sample_rate}Hz, {audio.buffer_size}-sample blocks")
        return True

    async def stop(self) -> bool:
        """Cancel scheduling, release devices, then clear the archive.

        Replays already playing are resolved by the mixer when it closes and tear
        themselves down; they never touch the (discarded) scheduler.

        Returns:
            True if a running session was stopped.
        """
        if self.state not in (SessionState.CAPTURING, SessionState.STARTING):
            return False

        self.state = SessionState.STOPPING
        self._event_bus.publish_nowait(SessionStatusEvent(status="stopping"))

        if self.scheduler is not None:
            self.scheduler.stop()

        recorder, self._recorder = self._recorder, None
        if recorder is not None:
            await asyncio.get_running_loop().run_in_executor(None, recorder.stop)

        mixer, self._mixer = self._mixer, None
        if mixer is not None:
            mixer.close()

        if self.archive is not None:
            logger.debug(f"Archive at stop: {self.archive.get_stats()}")
            self.archive.clear()
        self.archive = None
        self.scheduler = None
        self._selector = None
        self._builder = None

        self.state = SessionState.IDLE
        self._event_bus.publish_nowait(SessionStatusEvent(status="stopped"))
        self._event_bus.publish_nowait(ArchiveSizeUpdatedEvent(segment_count=0, duration_seconds=0.0))
        logger.info("Session stopped")
        return True

    def _archive_size(self) -> int:
        return self.archive.size() if self.archive is not None else 0

    def _on_block_from_capture_thread(self, samples: np.ndarray, captured_at: float) -> None:
        mixer = self._mixer
        if mixer is not None:
            mixer.push_monitor_block(samples)

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.on_block, samples, captured_at)
        except RuntimeError as e:
            logger.debug(f"Event loop closed while archiving block: {e}")

    def on_block(self, samples: np.ndarray, captured_at: Optional[float] = None) -> None:
        """Archive one captured block. Must run on the event loop thread.

        Args:
            samples: Mono block of ``buffer_size`` samples; copied into the segment.
            captured_at: Monotonic capture time in ms (defaults to the clock's now).
        """
        if self.state != SessionState.CAPTURING or self.archive is None:
            return

        if captured_at is None:
            captured_at = self._clock.now_ms()
        segment = Segment.from_block(samples, captured_at)
        self.archive.append(segment)

        appended = self.archive.total_appended
        if appended % self.config.archive.archive_report_every == 0:
            self._event_bus.publish_nowait(
                ArchiveSizeUpdatedEvent(
                    segment_count=self.archive.size(),
                    duration_seconds=self.archive.duration_seconds(self.config.audio.sample_rate),
                )
            )
        if appended % self.config.archive.level_report_every == 0 and len(segment):
            rms = float(np.sqrt(np.mean(np.square(segment.samples, dtype=np.float64))))
            self._event_bus.publish_nowait(InputLevelEvent(rms=rms, segment_count=self.archive.size()))

    def trigger_replay(self, source: ReplaySource = "manual") -> Optional[ReplayChain]:
        """Select a past fragment and play it through a fresh chain.

        Shared by both scheduler loops and manual requests. Unmet preconditions
        are reported with a ReplaySkippedEvent; nothing here raises.

        Returns:
            The started chain, or None if the replay was skipped or failed.
        """
        reason = None
        if self.state != SessionState.CAPTURING or self.archive is None:
            reason = f"session is {self.state.value}"
        elif self.archive.size() == 0:
            reason = "archive empty"
        elif self._mixer is None or not self._mixer.is_running():
            reason = "output not running"

        if reason is None:
            try:
                fragment = self._selector.select(self.archive, self._clock.now_ms())
            except EmptyArchiveError:
                reason = "archive empty"

        if reason is not None:
            logger.info(f"Replay skipped ({source}): {reason}")
            self._event_bus.publish_nowait(ReplaySkippedEvent(source=source, reason=reason))
            return None

        selection = fragment.selection
        self._event_bus.publish_nowait(
            SelectionDiagnosticsEvent(
                start_index=selection.start_index,
                candidate_count=selection.candidate_count,
                archive_length=selection.archive_length,
                degraded=selection.degraded,
                duration_sec=selection.duration_sec,
                target_samples=selection.target_sample_length,
                copied_samples=len(fragment.samples),
            )
        )

        chain = self._builder.play(fragment.samples, source)
        if chain is not None:
            self._active_chains.add(chain)
            chain.done.add_done_callback(lambda _: self._active_chains.discard(chain))
        return chain

    def on_check_interval_updated(self, interval_ms: float) -> int:
        """Apply a new probabilistic check period, restarting that loop if running.

        Values below the minimum are raised to it.

        Returns:
            The interval actually applied.
        """
        if not math.isfinite(interval_ms):
            raise ValueError(f"Check interval must be finite, got {interval_ms}")
        applied = max(MIN_CHECK_INTERVAL_MS, int(interval_ms))
        if applied != int(interval_ms):
            logger.warning(f"Check interval {interval_ms}ms below minimum, using {applied}ms")
        self.config.trigger.check_interval_ms = applied
        if self.scheduler is not None:
            self.scheduler.restart_probabilistic_loop()
        self._publish_trigger_config()
        logger.info(f"Check interval set to {applied / 1000:.1f}s")
        return applied

    def on_trigger_probability_updated(self, probability: float) -> float:
        """Apply a new trigger probability, clamped to [0, 1]; read on the next tick."""
        if not math.isfinite(probability):
            raise ValueError(f"Trigger probability must be finite, got {probability}")
        applied = min(1.0, max(0.0, float(probability)))
        if applied != probability:
            logger.warning(f"Trigger probability {probability} outside [0, 1], using {applied}")
        self.config.trigger.trigger_probability = applied
        self._publish_trigger_config()
        logger.info(f"Trigger probability set to {applied * 100:.0f}%")
        return applied

    def _publish_trigger_config(self) -> None:
        self._event_bus.publish_nowait(
            TriggerConfigChangedEvent(
                check_interval_ms=self.config.trigger.check_interval_ms,
                trigger_probability=self.config.trigger.trigger_probability,
            )
        )

    def _on_guarantee_scheduled(self, delay_ms: int, first: bool) -> None:
        self._event_bus.publish_nowait(GuaranteeScheduledEvent(delay_ms=delay_ms, first=first))

    async def _handle_session_control(self, event: SessionControlEvent) -> None:
        if event.command == "start":
            try:
                await self.start()
            except CaptureAcquisitionError as e:
                logger.debug(f"Start requested by event failed, session stays idle: {e}")
        else:
            await self.stop()

    def _handle_manual_replay(self, event: ManualReplayRequestEvent) -> None:
        self.trigger_replay("manual")
