class SoramimiError(Exception):
    """Base class for errors raised by the archive-and-replay engine."""


class ArchiveIndexError(SoramimiError, IndexError):
    """Lookup outside ``[0, size())`` of the archive. Indices never wrap."""

    def __init__(self, index: int, size: int) -> None:
        super().__init__(f"Archive index {index} out of range for archive of {size} segments")
        self.index = index
        self.size = size


class EmptyArchiveError(SoramimiError):
    """Fragment selection was requested from an archive holding no segments."""


class PlaybackConstructionError(SoramimiError):
    """A replay processing chain could not be built or started."""


class CaptureAcquisitionError(SoramimiError):
    """The capture device (or the output device) could not be opened at session start."""

