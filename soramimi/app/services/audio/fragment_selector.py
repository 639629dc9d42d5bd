"""Random selection of a past stretch of archived audio.

A fragment starts at a random segment outside the exclusion window and runs
for a random 2-5 seconds (rounded to whole blocks), wrapping around the end of
the archive if needed. Sample data is always copied out of the archive.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from soramimi.app.errors import EmptyArchiveError
from soramimi.app.services.audio.archive_buffer import ArchiveBuffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FragmentSelection:
    """Where a fragment was taken from and how long it was meant to be.

    Attributes:
        start_index: Archive position of the first segment.
        segment_span: Number of segments the copy touched.
        target_sample_length: Requested length in samples (a multiple of the block size).
        duration_sec: Drawn duration before quantization.
        candidate_count: Segments outside the exclusion window.
        archive_length: Archive size when the selection was made.
        degraded: True when no segment was old enough and the full archive was sampled.
    """

    start_index: int
    segment_span: int
    target_sample_length: int
    duration_sec: float
    candidate_count: int
    archive_length: int
    degraded: bool


@dataclass(frozen=True)
class Fragment:
    """Copied samples ready for playback, independent of the archive."""

    samples: np.ndarray = field(repr=False)
    sample_rate: int
    selection: FragmentSelection

    @property
    def duration_sec(self) -> float:
        return len(self.samples) / float(self.sample_rate)


def quantized_sample_length(duration_sec: float, sample_rate: int, block_size: int) -> int:
    """Round a duration to the nearest whole number of blocks, in samples."""
    return int(round(duration_sec * sample_rate / block_size)) * block_size


class FragmentSelector:
    """Picks and materializes random fragments from an ArchiveBuffer.

    Args:
        sample_rate: Sample rate of the archived audio.
        block_size: Samples per archived segment.
        exclude_recent_ms: Recent span whose segments are not eligible as start points.
        min_duration_sec: Lower bound of the fragment duration draw.
        max_duration_sec: Upper bound of the fragment duration draw.
        rng: Random source, injectable for reproducible selections.
    """

    def __init__(
        self,
        sample_rate: int = 44100,
        block_size: int = 4096,
        exclude_recent_ms: float = 4000,
        min_duration_sec: float = 2.0,
        max_duration_sec: float = 5.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.exclude_recent_ms = exclude_recent_ms
        self.min_duration_sec = min_duration_sec
        self.max_duration_sec = max_duration_sec
        self._rng = rng or random.Random()

    def draw_duration(self) -> float:
        return self._rng.uniform(self.min_duration_sec, self.max_duration_sec)

    def select(self, archive: ArchiveBuffer, now: float) -> Fragment:
        """Select a random fragment of past audio.

        Holds the archive lock for the whole selection so a concurrent append
        cannot shift indices between choosing the start and copying.

        Args:
            archive: Archive to read from; never modified.
            now: Current monotonic time in milliseconds.

        Returns:
            Fragment whose samples may be shorter than requested when the archive
            holds less audio than the drawn duration.

        Raises:
            EmptyArchiveError: If the archive holds no segments.
        """
        with archive.lock:
            archive_length = archive.size()
            if archive_length == 0:
                raise EmptyArchiveError("Cannot select a fragment from an empty archive")

            candidates = archive.candidate_indices(now, self.exclude_recent_ms)
            degraded = not candidates
            if degraded:
                start_index = self._rng.randrange(archive_length)
                logger.info(
                    f"No segment older than {self.exclude_recent_ms}ms, sampling whole archive: "
                    f"start_index={start_index}, archive_length={archive_length}"
                )
            else:
                start_index = self._rng.choice(candidates)

            duration_sec = self.draw_duration()
            target_length = quantized_sample_length(duration_sec, self.sample_rate, self.block_size)

            samples, span = self._concatenate(archive, start_index, archive_length, target_length)

        selection = FragmentSelection(
            start_index=start_index,
            segment_span=span,
            target_sample_length=target_length,
            duration_sec=duration_sec,
            candidate_count=len(candidates),
            archive_length=archive_length,
            degraded=degraded,
        )
        logger.debug(
            f"Selected fragment: start_index={start_index}, candidates={len(candidates)}, "
            f"duration={duration_sec:.2f}s -> {target_length} samples, copied={len(samples)}"
        )
        return Fragment(samples=samples, sample_rate=self.sample_rate, selection=selection)

    def _concatenate(self, archive: ArchiveBuffer, start_index: int, archive_length: int, target_length: int):
        output = np.zeros(target_length, dtype=np.float32)
        offset = 0
        span = 0

        while offset < target_length and span < archive_length:
            segment = archive.at((start_index + span) % archive_length)
            span += 1
            copy_length = min(self.block_size, target_length - offset, len(segment))
            output[offset : offset + copy_length] = segment.samples[:copy_length]
            offset += copy_length

        return output[:offset].copy(), span
