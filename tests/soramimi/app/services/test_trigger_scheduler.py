import random
from unittest.mock import Mock

import pytest

from soramimi.app.config.app_config import TriggerConfig
from soramimi.app.services.clock import ManualClock
from soramimi.app.services.trigger_scheduler import TriggerScheduler


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def archive_size():
    return Mock(return_value=0)


@pytest.fixture
def on_trigger():
    return Mock()


def _scheduler(clock, archive_size, on_trigger, seed=0, **config):
    scheduled = []
    scheduler = TriggerScheduler(
        clock=clock,
        config=TriggerConfig(**config),
        archive_size=archive_size,
        on_trigger=on_trigger,
        on_guarantee_scheduled=lambda delay_ms, first: scheduled.append((delay_ms, first)),
        rng=random.Random(seed),
    )
    return scheduler, scheduled


def _sources(on_trigger):
    return [call.args[0] for call in on_trigger.call_args_list]


def test_certain_probability_triggers_within_two_intervals(clock, archive_size, on_trigger):
    archive_size.return_value = 60
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, trigger_probability=1.0, check_interval_ms=1000)

    scheduler.start()
    clock.advance(2000)

    assert "probabilistic" in _sources(on_trigger)
    assert scheduler.probabilistic_triggers == 2


def test_probabilistic_loop_needs_enough_segments(clock, archive_size, on_trigger):
    archive_size.return_value = 10
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, trigger_probability=1.0, check_interval_ms=1000)

    scheduler.start()
    clock.advance(5000)

    assert "probabilistic" not in _sources(on_trigger)
    assert scheduler.probabilistic_checks == 5


def test_zero_probability_never_triggers_probabilistically(clock, archive_size, on_trigger):
    archive_size.return_value = 300
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, trigger_probability=0.0, check_interval_ms=1000)

    scheduler.start()
    clock.advance(60000)

    assert "probabilistic" not in _sources(on_trigger)
    assert scheduler.probabilistic_checks == 60


def test_guarantee_delays_stay_within_bounds(archive_size, on_trigger):
    for seed in range(20):
        clock = ManualClock()
        scheduler, scheduled = _scheduler(clock, archive_size, on_trigger, seed=seed, trigger_probability=0.0)
        scheduler.start()
        clock.advance(10 * 60 * 1000)
        scheduler.stop()

        first_delay, first = scheduled[0]
        assert first
        assert 1000 <= first_delay <= 30000
        assert len(scheduled) > 2
        for delay_ms, first in scheduled[1:]:
            assert not first
            assert 1000 <= delay_ms <= 60000


def test_guarantee_fires_when_archive_non_empty(clock, archive_size, on_trigger):
    archive_size.return_value = 1
    scheduler, scheduled = _scheduler(clock, archive_size, on_trigger, trigger_probability=0.0)

    scheduler.start()
    clock.advance(scheduled[0][0])

    assert _sources(on_trigger) == ["guarantee"]
    assert scheduler.guarantee_fires == 1


def test_guarantee_skips_empty_archive_but_keeps_scheduling(clock, archive_size, on_trigger):
    scheduler, scheduled = _scheduler(clock, archive_size, on_trigger, trigger_probability=0.0)

    scheduler.start()
    clock.advance(5 * 60 * 1000)

    on_trigger.assert_not_called()
    assert scheduler.guarantee_fires >= 4
    assert len(scheduled) == scheduler.guarantee_fires + 1


def test_guarantee_reschedules_after_trigger_error(clock, archive_size):
    archive_size.return_value = 20
    on_trigger = Mock(side_effect=RuntimeError("selection failed"))
    scheduler, scheduled = _scheduler(clock, archive_size, on_trigger, trigger_probability=0.0)

    scheduler.start()
    clock.advance(5 * 60 * 1000)

    assert scheduler.guarantee_fires >= 4
    assert on_trigger.call_count == scheduler.guarantee_fires
    assert scheduler.is_running


def test_repeated_start_keeps_a_single_probabilistic_loop(clock, archive_size, on_trigger):
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, check_interval_ms=10000)

    scheduler.start()
    scheduler.start()
    clock.advance(10000)

    assert scheduler.probabilistic_checks == 1


def test_stop_prevents_any_further_trigger(clock, archive_size, on_trigger):
    archive_size.return_value = 300
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, trigger_probability=1.0, check_interval_ms=1000)

    scheduler.start()
    scheduler.stop()
    clock.advance(10 * 60 * 1000)

    on_trigger.assert_not_called()
    assert clock.pending() == 0
    assert not scheduler.is_running


def test_trigger_handler_stopping_scheduler_stops_rescheduling(clock, archive_size):
    archive_size.return_value = 5
    scheduler = None

    def stop_on_trigger(source):
        scheduler.stop()

    scheduler, _ = _scheduler(clock, archive_size, Mock(side_effect=stop_on_trigger), trigger_probability=0.0)
    scheduler.start()
    clock.advance(10 * 60 * 1000)

    assert scheduler.guarantee_fires == 1
    assert clock.pending() == 0


def test_restart_cancels_pending_probabilistic_tick(clock, archive_size, on_trigger):
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, check_interval_ms=10000)
    scheduler.start()
    clock.advance(9000)

    scheduler.config.check_interval_ms = 5000
    scheduler.restart_probabilistic_loop()
    clock.advance(4000)
    assert scheduler.probabilistic_checks == 0

    clock.advance(1000)
    assert scheduler.probabilistic_checks == 1


def test_restart_leaves_guarantee_loop_untouched(clock, archive_size, on_trigger):
    scheduler, scheduled = _scheduler(clock, archive_size, on_trigger)
    scheduler.start()

    scheduler.restart_probabilistic_loop()

    assert len(scheduled) == 1


def test_restart_while_stopped_is_a_no_op(clock, archive_size, on_trigger):
    scheduler, _ = _scheduler(clock, archive_size, on_trigger)

    scheduler.restart_probabilistic_loop()

    assert clock.pending() == 0


def test_probability_change_applies_on_next_tick(clock, archive_size, on_trigger):
    archive_size.return_value = 300
    scheduler, _ = _scheduler(clock, archive_size, on_trigger, trigger_probability=0.0, check_interval_ms=1000)
    scheduler.start()
    clock.advance(1000)
    assert scheduler.probabilistic_triggers == 0

    scheduler.config.trigger_probability = 1.0
    clock.advance(1000)

    assert scheduler.probabilistic_triggers == 1
