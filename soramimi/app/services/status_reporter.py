import logging
from typing import Dict, Optional

from soramimi.app.event_bus import EventBus
from soramimi.app.events.replay_events import (
    GuaranteeScheduledEvent,
    PlaybackFailedEvent,
    ReplayCueEvent,
    ReplayEndedEvent,
    ReplaySkippedEvent,
    ReplayStartedEvent,
    SelectionDiagnosticsEvent,
)
from soramimi.app.events.session_events import (
    ArchiveSizeUpdatedEvent,
    InputLevelEvent,
    SessionStatusEvent,
    TriggerConfigChangedEvent,
)


class StatusReporter:
    """Notification sink that turns engine events into log lines and a status snapshot.

    Stands in for a status display: it keeps the latest values a display would
    show (session status, archive size, whether a replay is audible) in
    :meth:`snapshot` and logs every notification.
    """

    def __init__(self, event_bus: EventBus, logger: Optional[logging.Logger] = None) -> None:
        self._event_bus = event_bus
        self.logger = logger or logging.getLogger("soramimi.status")

        self.session_status = "stopped"
        self.sample_rate: Optional[int] = None
        self.archive_segments = 0
        self.archive_seconds = 0.0
        self.playing: Dict[str, str] = {}
        self.replays_started = 0
        self.replays_ended = 0
        self.replays_skipped = 0
        self.replays_failed = 0
        self.degraded_selections = 0

    def setup_subscriptions(self) -> None:
        subscriptions = {
            SessionStatusEvent: self._on_session_status,
            ArchiveSizeUpdatedEvent: self._on_archive_size,
            InputLevelEvent: self._on_input_level,
            TriggerConfigChangedEvent: self._on_trigger_config,
            SelectionDiagnosticsEvent: self._on_selection,
            ReplayStartedEvent: self._on_replay_started,
            ReplayCueEvent: self._on_replay_cue,
            ReplayEndedEvent: self._on_replay_ended,
            ReplaySkippedEvent: self._on_replay_skipped,
            PlaybackFailedEvent: self._on_playback_failed,
            GuaranteeScheduledEvent: self._on_guarantee_scheduled,
        }
        for event_type, handler in subscriptions.items():
            self._event_bus.subscribe(event_type=event_type, handler=handler)

    def snapshot(self) -> dict:
        return {
            "session_status": self.session_status,
            "sample_rate": self.sample_rate,
            "archive_segments": self.archive_segments,
            "archive_seconds": round(self.archive_seconds, 2),
            "replaying": bool(self.playing),
            "replays_started": self.replays_started,
            "replays_ended": self.replays_ended,
            "replays_skipped": self.replays_skipped,
            "replays_failed": self.replays_failed,
            "degraded_selections": self.degraded_selections,
        }

    def _on_session_status(self, event: SessionStatusEvent) -> None:
        self.session_status = event.status
        if event.status == "capturing":
            self.sample_rate = event.sample_rate
        elif event.status in ("stopped", "error"):
            self.sample_rate = None
            self.playing.clear()

        if event.status == "error":
            self.logger.error(f"Session error: {event.message}")
        else:
            detail = f" ({event.sample_rate}Hz)" if event.sample_rate else ""
            self.logger.info(f"Session {event.status}{detail}")

    def _on_archive_size(self, event: ArchiveSizeUpdatedEvent) -> None:
        self.archive_segments = event.segment_count
        self.archive_seconds = event.duration_seconds
        self.logger.debug(f"Archive: {event.segment_count} segments ({event.duration_seconds:.1f}s)")

    def _on_input_level(self, event: InputLevelEvent) -> None:
        self.logger.debug(f"Input level (RMS): {event.rms:.5f}")

    def _on_trigger_config(self, event: TriggerConfigChangedEvent) -> None:
        self.logger.info(
            f"Trigger: check every {event.check_interval_ms / 1000:.1f}s, "
            f"probability {event.trigger_probability * 100:.0f}%"
        )

    def _on_selection(self, event: SelectionDiagnosticsEvent) -> None:
        if event.degraded:
            self.degraded_selections += 1
            self.logger.info(
                f"No candidates (recent-audio exclusion relaxed): start_index={event.start_index}, "
                f"archive_length={event.archive_length}"
            )
        else:
            self.logger.info(
                f"Selected start_index={event.start_index} ({event.candidate_count} candidates), "
                f"archive_length={event.archive_length}"
            )
        self.logger.debug(
            f"Fragment length {event.duration_sec:.2f}s -> {event.target_samples} samples, "
            f"copied {event.copied_samples}"
        )

    def _on_replay_started(self, event: ReplayStartedEvent) -> None:
        self.replays_started += 1
        self.playing[event.chain_id] = event.source
        self.logger.info(f"Replay started [{event.source}] {event.duration_sec:.2f}s")

    def _on_replay_cue(self, event: ReplayCueEvent) -> None:
        self.logger.debug(f"Cue '{event.cue}' for replay {event.chain_id}")

    def _on_replay_ended(self, event: ReplayEndedEvent) -> None:
        self.replays_ended += 1
        self.playing.pop(event.chain_id, None)
        self.logger.info(f"Replay ended [{event.source}]")

    def _on_replay_skipped(self, event: ReplaySkippedEvent) -> None:
        self.replays_skipped += 1
        self.logger.info(f"Replay skipped [{event.source}]: {event.reason}")

    def _on_playback_failed(self, event: PlaybackFailedEvent) -> None:
        self.replays_failed += 1
        self.logger.warning(f"Replay failed [{event.source}]: {event.error}")

    def _on_guarantee_scheduled(self, event: GuaranteeScheduledEvent) -> None:
        self.logger.info(f"Next guaranteed replay in {event.delay_ms / 1000:.0f}s")
