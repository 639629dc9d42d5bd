import logging
import random
from typing import Callable, Optional

from soramimi.app.config.app_config import TriggerConfig
from soramimi.app.events.replay_events import ReplaySource
from soramimi.app.services.clock import CancelHandle, Clock

logger = logging.getLogger(__name__)


class TriggerScheduler:
    """Two independent timer loops deciding when a replay is attempted.

    - Probabilistic loop: every ``check_interval_ms`` draws u ~ U[0, 1) and
      triggers when ``u < trigger_probability`` and the archive holds more than
      ``min_segments_for_random_trigger`` segments.
    - Guarantee loop: fires after a random delay (first one within 1-30s of
      start, later ones within 1-60s) and triggers whenever the archive is
      non-empty. It always schedules its next fire, even when the attempt was
      skipped or raised.

    Every start/stop bumps a generation number. Timer callbacks carry the
    generation they were created in and do nothing once it is stale, so a
    callback that races with stop or restart can never fire a replay.

    Attributes:
        config: Live trigger configuration; read on every tick.
        probabilistic_checks: Probabilistic ticks evaluated since start.
        probabilistic_triggers: Replays requested by the probabilistic loop.
        guarantee_fires: Guarantee loop fires since start.
    """

    def __init__(
        self,
        clock: Clock,
        config: TriggerConfig,
        archive_size: Callable[[], int],
        on_trigger: Callable[[ReplaySource], None],
        on_guarantee_scheduled: Optional[Callable[[int, bool], None]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """Initialize the scheduler in the stopped state.

        Args:
            clock: Time source and timer factory.
            config: Trigger configuration (probability, interval, delay bounds).
            archive_size: Returns the current number of archived segments.
            on_trigger: Requests one replay; receives the requesting loop's name.
            on_guarantee_scheduled: Optional notification of (delay_ms, first) per schedule.
            rng: Random source for probability draws and guarantee delays.
        """
        self.config = config
        self._clock = clock
        self._archive_size = archive_size
        self._on_trigger = on_trigger
        self._on_guarantee_scheduled = on_guarantee_scheduled
        self._rng = rng or random.Random()

        self._running = False
        self._generation = 0
        self._probabilistic_handle: Optional[CancelHandle] = None
        self._guarantee_handle: Optional[CancelHandle] = None

        self.probabilistic_checks = 0
        self.probabilistic_triggers = 0
        self.guarantee_fires = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start both loops, cancelling any loops left from a previous start."""
        self._cancel_timers()
        self._generation += 1
        self._running = True
        self.probabilistic_checks = 0
        self.probabilistic_triggers = 0
        self.guarantee_fires = 0

        self._start_probabilistic_loop()
        self._schedule_guarantee(first=True)
        logger.info(
            f"Trigger scheduler started: check every {self.config.check_interval_ms / 1000:.1f}s, "
            f"probability {self.config.trigger_probability * 100:.0f}%"
        )

    def stop(self) -> None:
        """Cancel both loops. No trigger is requested after this returns."""
        was_running = self._running
        self._running = False
        self._generation += 1
        self._cancel_timers()
        if was_running:
            logger.info("Trigger scheduler stopped")

    def restart_probabilistic_loop(self) -> None:
        """Cancel the pending probabilistic tick and start a fresh period now.

        Used after ``check_interval_ms`` changes; the guarantee loop is untouched.
        No-op while stopped.
        """
        if not self._running:
            return
        self._start_probabilistic_loop()
        logger.info(f"Probabilistic loop restarted: check every {self.config.check_interval_ms / 1000:.1f}s")

    def next_guarantee_delay_ms(self, first: bool) -> int:
        if first:
            return self._rng.randint(self.config.guarantee_first_min_ms, self.config.guarantee_first_max_ms)
        return self._rng.randint(self.config.guarantee_min_ms, self.config.guarantee_max_ms)

    def _cancel_timers(self) -> None:
        for handle in (self._probabilistic_handle, self._guarantee_handle):
            if handle is not None:
                handle.cancel()
        self._probabilistic_handle = None
        self._guarantee_handle = None

    def _start_probabilistic_loop(self) -> None:
        if self._probabilistic_handle is not None:
            self._probabilistic_handle.cancel()
            self._probabilistic_handle = None

        generation = self._generation
        self._probabilistic_handle = self._clock.repeat(
            self.config.check_interval_ms, lambda: self._probabilistic_tick(generation)
        )

    def _probabilistic_tick(self, generation: int) -> None:
        if not self._running or generation != self._generation:
            return

        self.probabilistic_checks += 1
        draw = self._rng.random()
        if draw < self.config.trigger_probability and self._archive_size() > self.config.min_segments_for_random_trigger:
            self.probabilistic_triggers += 1
            logger.debug(f"Probabilistic trigger: draw={draw:.3f} < {self.config.trigger_probability:.3f}")
            self._on_trigger("probabilistic")

    def _schedule_guarantee(self, first: bool) -> None:
        if self._guarantee_handle is not None:
            self._guarantee_handle.cancel()

        delay_ms = self.next_guarantee_delay_ms(first)
        generation = self._generation
        self._guarantee_handle = self._clock.after(delay_ms, lambda: self._guarantee_fire(generation))
        logger.debug(f"Next guaranteed replay attempt in {delay_ms / 1000:.1f}s")

        if self._on_guarantee_scheduled is not None:
            self._on_guarantee_scheduled(delay_ms, first)

    def _guarantee_fire(self, generation: int) -> None:
        if not self._running or generation != self._generation:
            return

        self._guarantee_handle = None
        self.guarantee_fires += 1
        try:
            if self._archive_size() > 0:
                self._on_trigger("guarantee")
            else:
                logger.debug("Guaranteed replay skipped: archive empty")
        except Exception as e:
            logger.error(f"Guaranteed replay attempt failed: {e}", exc_info=True)
        finally:
            # A trigger handler may have stopped or restarted the scheduler.
            if self._running and generation == self._generation:
                self._schedule_guarantee(first=False)
