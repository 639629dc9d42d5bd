import asyncio
import logging
import math
import random
import uuid
from contextlib import ExitStack
from typing import List, Optional

import numpy as np

from soramimi.app.config.app_config import ReplayConfig
from soramimi.app.event_bus import EventBus
from soramimi.app.events.replay_events import (
    PlaybackFailedEvent,
    ReplayCueEvent,
    ReplayEndedEvent,
    ReplaySource,
    ReplayStartedEvent,
)
from soramimi.app.services.audio.audio_nodes import AudioNode
from soramimi.app.services.audio.output_mixer import OutputMixer

logger = logging.getLogger(__name__)


class ReplayChain:
    """One playing replay: its nodes, its completion future and its teardown.

    Teardown runs exactly once, when the mixer resolves the completion future
    (natural end or mixer close), whichever path gets there.

    Attributes:
        chain_id: Short identifier used in notifications.
        source: Trigger that requested the replay.
        pan: Stereo position the panner was built with.
        cutoff_hz: Low-pass cutoff the filter was built with.
        duration_sec: Length of the played fragment.
        done: Future resolved after teardown completes.
    """

    def __init__(
        self,
        chain_id: str,
        source: ReplaySource,
        nodes: List[AudioNode],
        event_bus: EventBus,
        pan: float,
        cutoff_hz: float,
        duration_sec: float,
    ) -> None:
        self.chain_id = chain_id
        self.source = source
        self.pan = pan
        self.cutoff_hz = cutoff_hz
        self.duration_sec = duration_sec
        self._nodes = nodes
        self._event_bus = event_bus
        self._released = False
        self.done: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def released(self) -> bool:
        return self._released

    def attach(self, playback: asyncio.Future) -> None:
        playback.add_done_callback(self._on_playback_finished)

    def _on_playback_finished(self, playback: asyncio.Future) -> None:
        if self._released:
            return
        self._released = True

        for node in self._nodes:
            try:
                node.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting node {type(node).__name__} of chain {self.chain_id}: {e}")
        self._nodes = []

        finished = not playback.cancelled() and playback.exception() is None and playback.result()
        logger.info(f"Replay {self.chain_id} ended ({'complete' if finished else 'interrupted'})")
        self._event_bus.publish_nowait(ReplayEndedEvent(chain_id=self.chain_id, source=self.source))
        if not self.done.done():
            self.done.set_result(finished)


class PlaybackChainBuilder:
    """Builds and starts disposable source -> low-pass -> panner -> gain chains.

    Each invocation draws its own cutoff and pan, renders the fragment through the
    chain and hands the result to the output mixer. Nodes created before a failure
    are released immediately; a failure is reported with a PlaybackFailedEvent and
    never propagates to the caller.

    Args:
        mixer: Output sink providing node factories and playback.
        event_bus: Bus for replay lifecycle notifications.
        config: Replay processing ranges and gain.
        rng: Random source for cutoff, pan and sign draws.
    """

    def __init__(
        self,
        mixer: OutputMixer,
        event_bus: EventBus,
        config: ReplayConfig,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._mixer = mixer
        self._event_bus = event_bus
        self._config = config
        self._rng = rng or random.Random()

    def draw_pan(self) -> float:
        magnitude = self._rng.uniform(self._config.pan_min, self._config.pan_max)
        return magnitude if self._rng.random() > 0.5 else -magnitude

    def draw_cutoff(self) -> float:
        return self._rng.uniform(self._config.cutoff_min_hz, self._config.cutoff_max_hz)

    def play(self, samples: np.ndarray, source: ReplaySource) -> Optional[ReplayChain]:
        """Build a chain for ``samples`` and start it.

        Args:
            samples: Mono fragment samples (copied by the source node).
            source: Trigger that requested the replay.

        Returns:
            The playing chain, or None if construction failed.
        """
        chain_id = uuid.uuid4().hex[:8]
        pan = self.draw_pan()
        cutoff_hz = self.draw_cutoff()
        duration_sec = len(samples) / float(self._mixer.sample_rate)

        try:
            with ExitStack() as stack:
                nodes: List[AudioNode] = []
                for factory in (
                    lambda: self._mixer.create_source(samples),
                    lambda: self._mixer.create_lowpass(cutoff_hz, order=self._config.filter_order),
                    lambda: self._mixer.create_panner(pan),
                    lambda: self._mixer.create_gain(self._config.replay_gain),
                ):
                    node = factory()
                    stack.callback(node.disconnect)
                    nodes.append(node)

                source_node, filter_node, panner_node, gain_node = nodes
                source_node.connect(filter_node).connect(panner_node).connect(gain_node)

                chain = ReplayChain(
                    chain_id=chain_id,
                    source=source,
                    nodes=nodes,
                    event_bus=self._event_bus,
                    pan=pan,
                    cutoff_hz=cutoff_hz,
                    duration_sec=duration_sec,
                )
                playback = self._mixer.play(source_node.render())
                stack.pop_all()
        except Exception as e:
            logger.error(f"Failed to build replay chain {chain_id}: {e}", exc_info=True)
            self._event_bus.publish_nowait(PlaybackFailedEvent(source=source, error=str(e)))
            return None

        self._event_bus.publish_nowait(
            ReplayStartedEvent(chain_id=chain_id, source=source, duration_sec=duration_sec, pan=pan, cutoff_hz=cutoff_hz)
        )
        self._event_bus.publish_nowait(ReplayCueEvent(chain_id=chain_id))
        logger.info(f"Replay {chain_id} started: {duration_sec:.2f}s, pan={pan:+.2f}, cutoff={cutoff_hz:.0f}Hz ({source})")

        chain.attach(playback)
        return chain

    def play_test_tone(self) -> Optional[asyncio.Future]:
        """Play a short quiet sine so the operator can confirm output works."""
        if not self._config.test_tone_enabled:
            return None

        sample_rate = self._mixer.sample_rate
        n = int(self._config.test_tone_duration_sec * sample_rate)
        t = np.arange(n, dtype=np.float32) / sample_rate
        tone = np.sin(2 * math.pi * self._config.test_tone_frequency_hz * t).astype(np.float32)

        gain = self._mixer.create_gain(self._config.test_tone_gain)
        try:
            playback = self._mixer.play(gain.process(tone))
        except Exception as e:
            logger.warning(f"Test tone failed: {e}")
            return None
        finally:
            gain.disconnect()

        logger.info("Played test tone (check that it was audible)")
        return playback
