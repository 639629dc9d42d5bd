"""Bounded, timestamped archive of captured audio blocks.

The archive is a FIFO of immutable segments. Eviction only happens inside
``append``: once the archive is full, every append drops exactly one segment
from the front.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

import numpy as np

from soramimi.app.errors import ArchiveIndexError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    """One captured block of mono samples and the monotonic time it was captured at.

    The sample array is a private read-only copy, so neither the capture device
    nor a replay can modify archived audio.

    Attributes:
        samples: float32 samples of one captured block.
        captured_at: Monotonic capture timestamp in milliseconds.
    """

    samples: np.ndarray = field(repr=False)
    captured_at: float

    @classmethod
    def from_block(cls, block: np.ndarray, captured_at: float) -> "Segment":
        samples = np.array(block, dtype=np.float32, copy=True).reshape(-1)
        samples.setflags(write=False)
        return cls(samples=samples, captured_at=float(captured_at))

    def __len__(self) -> int:
        return len(self.samples)


class ArchiveBuffer:
    """Fixed-capacity FIFO of Segments in capture order.

    All public methods take ``lock`` (re-entrant), so a reader can hold it across
    several calls to see one consistent snapshot while capture keeps appending
    from another thread.

    Attributes:
        capacity: Maximum number of retained segments.
        lock: Re-entrant lock serializing appends against reads.
        last_evicted: Segment dropped by the most recent overflowing append.
        total_appended: Segments appended since creation or the last clear.
    """

    def __init__(self, capacity: int = 300) -> None:
        if capacity <= 0:
            raise ValueError(f"Archive capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.lock = threading.RLock()
        self._segments: Deque[Segment] = deque()
        self.last_evicted: Optional[Segment] = None
        self.total_appended = 0

    def append(self, segment: Segment) -> None:
        with self.lock:
            self._segments.append(segment)
            self.total_appended += 1
            if len(self._segments) > self.capacity:
                self.last_evicted = self._segments.popleft()

    def size(self) -> int:
        with self.lock:
            return len(self._segments)

    def __len__(self) -> int:
        return self.size()

    def at(self, index: int) -> Segment:
        """Return the segment ``index`` positions after the oldest retained one.

        Raises:
            ArchiveIndexError: If ``index`` is negative or not below ``size()``.
        """
        with self.lock:
            size = len(self._segments)
            if index < 0 or index >= size:
                raise ArchiveIndexError(index, size)
            return self._segments[index]

    def candidate_indices(self, now: float, exclude_recent_ms: float) -> List[int]:
        """Indices of segments captured strictly before ``now - exclude_recent_ms``.

        An empty list means nothing is old enough yet; callers then sample from
        the whole archive instead.
        """
        cutoff = now - exclude_recent_ms
        with self.lock:
            return [i for i, segment in enumerate(self._segments) if segment.captured_at < cutoff]

    def clear(self) -> None:
        with self.lock:
            count = len(self._segments)
            self._segments.clear()
            self.last_evicted = None
            self.total_appended = 0
        logger.debug(f"Archive cleared ({count} segments dropped)")

    def duration_seconds(self, sample_rate: int) -> float:
        with self.lock:
            return sum(len(segment) for segment in self._segments) / float(sample_rate)

    def get_stats(self) -> dict:
        with self.lock:
            return {
                "size": len(self._segments),
                "capacity": self.capacity,
                "total_appended": self.total_appended,
                "oldest_captured_at": self._segments[0].captured_at if self._segments else None,
                "newest_captured_at": self._segments[-1].captured_at if self._segments else None,
            }
