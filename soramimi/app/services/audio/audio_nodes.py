"""Processing nodes for one-shot replay chains.

Nodes form a linear chain (``source.connect(filter).connect(panner)...``). The
source renders its whole buffer through the chain at once; the result is what
the output mixer plays. Every node must be disconnected when its chain ends.
"""

import math
from typing import Optional

import numpy as np
from scipy.signal import butter, lfilter


class AudioNode:
    """A node with at most one upstream and one downstream neighbour."""

    def __init__(self) -> None:
        self._input: Optional["AudioNode"] = None
        self._output: Optional["AudioNode"] = None
        self.released = False

    def connect(self, node: "AudioNode") -> "AudioNode":
        if self.released or node.released:
            raise RuntimeError("Cannot connect a released node")
        self._output = node
        node._input = self
        return node

    @property
    def is_connected(self) -> bool:
        return self._input is not None or self._output is not None

    def disconnect(self) -> None:
        """Detach from both neighbours and release the node. Safe to call twice."""
        if self._output is not None and self._output._input is self:
            self._output._input = None
        if self._input is not None and self._input._output is self:
            self._input._output = None
        self._input = None
        self._output = None
        self.released = True

    def process(self, samples: np.ndarray) -> np.ndarray:
        return samples


class BufferSourceNode(AudioNode):
    """Chain head holding a private copy of the samples to play."""

    def __init__(self, samples: np.ndarray) -> None:
        super().__init__()
        self.samples = np.array(samples, dtype=np.float32, copy=True).reshape(-1)

    def render(self) -> np.ndarray:
        """Run the buffer through every downstream node and return the result."""
        if self.released:
            raise RuntimeError("Source node has been released")
        data = self.samples
        node = self._output
        while node is not None:
            data = node.process(data)
            node = node._output
        return data

    def disconnect(self) -> None:
        super().disconnect()
        self.samples = np.zeros(0, dtype=np.float32)


class LowPassFilterNode(AudioNode):
    """Butterworth low-pass filter applied along the time axis."""

    def __init__(self, cutoff_hz: float, sample_rate: int, order: int = 2) -> None:
        super().__init__()
        nyquist = 0.5 * sample_rate
        if not 0 < cutoff_hz < nyquist:
            raise ValueError(f"Cutoff {cutoff_hz}Hz must lie between 0 and the Nyquist frequency {nyquist}Hz")
        self.cutoff_hz = cutoff_hz
        self.sample_rate = sample_rate
        self._b, self._a = butter(order, cutoff_hz / nyquist, btype="low", analog=False)

    def process(self, samples: np.ndarray) -> np.ndarray:
        if len(samples) == 0:
            return samples
        return lfilter(self._b, self._a, samples, axis=0).astype(np.float32)


class StereoPannerNode(AudioNode):
    """Equal-power panner turning a mono signal into stereo frames.

    ``pan`` runs from -1 (hard left) to 1 (hard right); 0 keeps both channels at
    cos(pi/4).
    """

    def __init__(self, pan: float) -> None:
        super().__init__()
        if not -1.0 <= pan <= 1.0:
            raise ValueError(f"Pan must be within [-1, 1], got {pan}")
        self.pan = pan
        x = (pan + 1.0) / 2.0
        self.left_gain = math.cos(x * math.pi / 2)
        self.right_gain = math.sin(x * math.pi / 2)

    def process(self, samples: np.ndarray) -> np.ndarray:
        if samples.ndim == 2:
            samples = samples.mean(axis=1)
        return np.stack([samples * self.left_gain, samples * self.right_gain], axis=1).astype(np.float32)


class GainNode(AudioNode):
    def __init__(self, gain: float) -> None:
        super().__init__()
        self.gain = gain

    def process(self, samples: np.ndarray) -> np.ndarray:
        return (samples * self.gain).astype(np.float32)
