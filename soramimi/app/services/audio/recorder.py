import logging
import threading
import time
from typing import Any, Callable, Optional

import numpy as np

from soramimi.app.config.app_config import AudioConfig
from soramimi.app.errors import CaptureAcquisitionError
from soramimi.app.services.audio import devices


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class AudioRecorder:
    """Continuous mono block recorder.

    Opens a float32 ``sounddevice.InputStream`` with ``blocksize=buffer_size`` and
    reads one block at a time on a dedicated thread, handing each block to
    ``on_block`` together with its monotonic capture time in milliseconds. No
    buffering happens here; the session decides what to keep.

    The stream is opened synchronously in :meth:`start`, so a missing or busy
    device fails the caller immediately instead of failing later on the thread.

    Attributes:
        sample_rate: Audio sample rate in Hz.
        block_size: Samples per delivered block.
        device: Audio input device ID (None = system default).
    """

    def __init__(
        self,
        audio_config: AudioConfig,
        on_block: Optional[Callable[[np.ndarray, float], None]] = None,
    ) -> None:
        """Initialize the recorder.

        Args:
            audio_config: Capture settings (sample rate, block size, device).
            on_block: Callback invoked for every captured block.
                      Signature: (samples: np.ndarray, captured_at_ms: float) -> None
        """
        self.logger = logging.getLogger(f"{self.__class__.__name__}")
        self.on_block = on_block

        self.sample_rate = audio_config.sample_rate
        self.block_size = audio_config.buffer_size
        self.device = audio_config.input_device

        self._is_recording: bool = False
        self._thread: Optional[threading.Thread] = None
        self._stream: Optional[Any] = None
        self._lock = threading.Lock()

        self.logger.debug(f"AudioRecorder initialized: block_size={self.block_size} samples, sample_rate={self.sample_rate}Hz")

    def _recording_thread(self) -> None:
        """Read blocks until stopped or the device fails."""
        try:
            while True:
                with self._lock:
                    if not self._is_recording:
                        break
                    stream = self._stream
                if stream is None:
                    break

                try:
                    data, overflowed = stream.read(self.block_size)
                    captured_at = monotonic_ms()
                except Exception as e:
                    self.logger.error(f"Audio device error: {e}")
                    return

                if overflowed:
                    self.logger.debug("Input overflow, a block may contain a gap")

                if self.on_block:
                    samples = np.asarray(data, dtype=np.float32)
                    if samples.ndim == 2:
                        samples = samples[:, 0]
                    self.on_block(samples.copy(), captured_at)

        except Exception as e:
            self.logger.error(f"Recording thread error: {e}", exc_info=True)
        finally:
            with self._lock:
                self._is_recording = False

    def _cleanup_stream(self) -> None:
        """Clean up audio stream resources safely."""
        if self._stream:
            try:
                if getattr(self._stream, "active", False):
                    self._stream.stop()
                self._stream.close()
                self.logger.debug("Audio stream closed")
            except Exception as e:
                self.logger.error(f"Error cleaning up audio stream: {e}", exc_info=True)
            finally:
                self._stream = None

    def start(self) -> None:
        """Open the input stream and start the reading thread.

        Calls while already recording are ignored.

        Raises:
            CaptureAcquisitionError: If the input device cannot be opened.
        """
        with self._lock:
            if self._is_recording:
                return
            try:
                self._stream = devices.open_input_stream(
                    samplerate=self.sample_rate,
                    blocksize=self.block_size,
                    channels=1,
                    dtype="float32",
                    device=self.device,
                )
                self._stream.start()
            except Exception as e:
                self._cleanup_stream()
                raise CaptureAcquisitionError(f"Could not open input device: {e}") from e

            self._is_recording = True
            self._thread = threading.Thread(target=self._recording_thread, name="AudioRecorder", daemon=True)
            self._thread.start()
        self.logger.info("Audio capture started")

    def stop(self) -> None:
        """Stop the reading thread and release the stream (waits up to 5 seconds)."""
        with self._lock:
            was_recording = self._is_recording
            self._is_recording = False

        thread = self._thread
        if thread and thread is not threading.current_thread():
            thread.join(timeout=5.0)
            if thread.is_alive():
                self.logger.error("Recording thread did not terminate after 5s timeout")
        self._thread = None

        with self._lock:
            self._cleanup_stream()
        if was_recording:
            self.logger.info("Audio capture stopped")

    def is_recording(self) -> bool:
        with self._lock:
            return self._is_recording
