import asyncio
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

import numpy as np

from soramimi.app.errors import CaptureAcquisitionError, PlaybackConstructionError
from soramimi.app.services.audio import devices
from soramimi.app.services.audio.audio_nodes import BufferSourceNode, GainNode, LowPassFilterNode, StereoPannerNode

OUTPUT_CHANNELS = 2


@dataclass
class _Voice:
    voice_id: str
    frames: np.ndarray = field(repr=False)
    future: asyncio.Future = field(repr=False)
    position: int = 0


class OutputMixer:
    """Stereo output sink mixing live monitoring with one-shot replay voices.

    A ``sounddevice.OutputStream`` callback pulls frames from :meth:`mix`, which
    sums the monitored microphone signal and every active voice, then clips to
    [-1, 1]. Voices are pre-rendered stereo arrays; when the last frame of a
    voice has been mixed its future is resolved on the event loop.

    The live signal is pushed block by block from the capture thread via
    :meth:`push_monitor_block`; at most ``max_monitor_latency_blocks`` blocks are
    queued so monitoring never drifts far behind the microphone.

    Attributes:
        sample_rate: Output sample rate in Hz.
        device: Output device ID (None = system default).
        monitoring_enabled: Whether pushed input blocks are audible.
        monitoring_gain: Gain applied to the live signal.
    """

    def __init__(
        self,
        sample_rate: int = 44100,
        device: Optional[int] = None,
        monitoring_enabled: bool = True,
        monitoring_gain: float = 1.5,
        max_monitor_latency_blocks: int = 3,
        block_size: int = 4096,
    ) -> None:
        self.logger = logging.getLogger(f"{self.__class__.__name__}")
        self.sample_rate = sample_rate
        self.device = device
        self.monitoring_enabled = monitoring_enabled
        self.monitoring_gain = monitoring_gain
        self._max_monitor_samples = max_monitor_latency_blocks * block_size

        self._stream: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self._voices: Dict[str, _Voice] = {}
        self._monitor_blocks: Deque[np.ndarray] = deque()
        self._monitor_samples = 0

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Open and start the output stream.

        Raises:
            CaptureAcquisitionError: If the output device cannot be opened.
        """
        if self._stream is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        try:
            stream = devices.open_output_stream(
                samplerate=self.sample_rate,
                channels=OUTPUT_CHANNELS,
                dtype="float32",
                device=self.device,
                callback=self._stream_callback,
            )
            stream.start()
        except Exception as e:
            raise CaptureAcquisitionError(f"Could not open output device: {e}") from e
        self._stream = stream
        self.logger.info(f"Output stream started: {self.sample_rate}Hz, {OUTPUT_CHANNELS} channels")

    def is_running(self) -> bool:
        return self._stream is not None

    def close(self) -> None:
        """Stop the stream and resolve any voices that were still playing.

        Resolving pending voices lets their chains tear down exactly as after a
        natural end.
        """
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                if getattr(stream, "active", False):
                    stream.stop()
                stream.close()
            except Exception as e:
                self.logger.error(f"Error closing output stream: {e}", exc_info=True)

        with self._lock:
            pending = list(self._voices.values())
            self._voices.clear()
            self._monitor_blocks.clear()
            self._monitor_samples = 0

        for voice in pending:
            self._resolve(voice, finished=False)
        if stream is not None:
            self.logger.info("Output stream closed")

    # Node factories

    def create_source(self, samples: np.ndarray) -> BufferSourceNode:
        return BufferSourceNode(samples)

    def create_lowpass(self, cutoff_hz: float, order: int = 2) -> LowPassFilterNode:
        return LowPassFilterNode(cutoff_hz=cutoff_hz, sample_rate=self.sample_rate, order=order)

    def create_panner(self, pan: float) -> StereoPannerNode:
        return StereoPannerNode(pan)

    def create_gain(self, gain: float) -> GainNode:
        return GainNode(gain)

    def play(self, frames: np.ndarray) -> asyncio.Future:
        """Schedule a rendered voice for playback.

        Args:
            frames: Mono (n,) or stereo (n, 2) float samples.

        Returns:
            Future resolved with True once the voice has been fully mixed, or with
            False if the mixer was closed first.

        Raises:
            PlaybackConstructionError: If the mixer is not running or frames are malformed.
        """
        if self._stream is None or self._loop is None:
            raise PlaybackConstructionError("Output mixer is not running")

        frames = np.asarray(frames, dtype=np.float32)
        if frames.ndim == 1:
            frames = np.repeat(frames[:, None], OUTPUT_CHANNELS, axis=1)
        if frames.ndim != 2 or frames.shape[1] != OUTPUT_CHANNELS:
            raise PlaybackConstructionError(f"Voice must be mono or stereo, got shape {frames.shape}")

        voice = _Voice(voice_id=uuid.uuid4().hex, frames=frames, future=self._loop.create_future())
        if len(frames) == 0:
            voice.future.set_result(True)
            return voice.future

        with self._lock:
            self._voices[voice.voice_id] = voice
        return voice.future

    def active_voice_count(self) -> int:
        with self._lock:
            return len(self._voices)

    def push_monitor_block(self, block: np.ndarray) -> None:
        if not self.monitoring_enabled or self._stream is None:
            return
        block = np.asarray(block, dtype=np.float32).reshape(-1)
        with self._lock:
            self._monitor_blocks.append(block)
            self._monitor_samples += len(block)
            while self._monitor_samples > self._max_monitor_samples and len(self._monitor_blocks) > 1:
                self._monitor_samples -= len(self._monitor_blocks.popleft())

    def _pull_monitor(self, frames: int) -> np.ndarray:
        out = np.zeros(frames, dtype=np.float32)
        filled = 0
        while filled < frames and self._monitor_blocks:
            block = self._monitor_blocks[0]
            take = min(frames - filled, len(block))
            out[filled : filled + take] = block[:take]
            filled += take
            if take == len(block):
                self._monitor_blocks.popleft()
            else:
                self._monitor_blocks[0] = block[take:]
            self._monitor_samples -= take
        return out

    def mix(self, frames: int) -> np.ndarray:
        """Produce the next ``frames`` stereo output frames."""
        out = np.zeros((frames, OUTPUT_CHANNELS), dtype=np.float32)
        finished: List[_Voice] = []

        with self._lock:
            if self.monitoring_enabled:
                out += (self._pull_monitor(frames) * self.monitoring_gain)[:, None]

            for voice in list(self._voices.values()):
                chunk = voice.frames[voice.position : voice.position + frames]
                out[: len(chunk)] += chunk
                voice.position += len(chunk)
                if voice.position >= len(voice.frames):
                    del self._voices[voice.voice_id]
                    finished.append(voice)

        for voice in finished:
            self._resolve(voice, finished=True)

        np.clip(out, -1.0, 1.0, out=out)
        return out

    def _stream_callback(self, outdata, frames, time_info, status) -> None:
        if status:
            self.logger.debug(f"Output stream status: {status}")
        outdata[:] = self.mix(frames)

    def _resolve(self, voice: _Voice, finished: bool) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        def _set_result() -> None:
            if not voice.future.done():
                voice.future.set_result(finished)

        try:
            loop.call_soon_threadsafe(_set_result)
        except RuntimeError as e:
            self.logger.debug(f"Event loop closed before voice {voice.voice_id} completed: {e}")
