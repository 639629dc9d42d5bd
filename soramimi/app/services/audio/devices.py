"""Access to PortAudio streams through sounddevice.

sounddevice loads the PortAudio shared library when it is imported, so the
import happens here, at the moment a device is opened. A missing library then
surfaces as a failed session start instead of an import error for the whole
application.
"""

from typing import Any


def _sounddevice():
    import sounddevice as sd

    return sd


def open_input_stream(**kwargs: Any):
    """Create (but do not start) a ``sounddevice.InputStream``."""
    return _sounddevice().InputStream(**kwargs)


def open_output_stream(**kwargs: Any):
    """Create (but do not start) a ``sounddevice.OutputStream``."""
    return _sounddevice().OutputStream(**kwargs)


def describe_devices() -> str:
    """Human-readable device table as printed by ``sounddevice.query_devices``."""
    return str(_sounddevice().query_devices())
