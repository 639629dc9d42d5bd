import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from soramimi.app.config.logging_config import LoggingConfigModel

logger = logging.getLogger(__name__)


class AudioConfig(BaseModel):
    """Configuration for audio capture, live monitoring and output.

    Capture delivers mono float32 blocks of ``buffer_size`` samples; one block
    becomes one archive segment (about 93ms at 44.1kHz).
    """

    model_config = {"validate_assignment": True}

    sample_rate: int = Field(44100, gt=0, description="Capture and output sample rate in Hz")
    buffer_size: int = Field(4096, gt=0, description="Samples per captured block (one archive segment)")
    channels: int = Field(1, description="Capture channels (mono only)")
    input_device: Optional[int] = None
    output_device: Optional[int] = None

    monitoring_enabled: bool = Field(True, description="Route the live microphone signal to the output")
    monitoring_gain: float = Field(1.5, ge=0.0, description="Gain applied to the live monitoring signal")


class ArchiveConfig(BaseModel):
    """Rolling archive sizing and status reporting cadence."""

    model_config = {"validate_assignment": True}

    max_segments: int = Field(300, gt=0, description="Maximum retained segments before the oldest is evicted")
    exclude_recent_ms: int = Field(4000, ge=0, description="Most recent span that is never selected for replay")
    archive_report_every: int = Field(10, gt=0, description="Publish archive size every N appended segments")
    level_report_every: int = Field(50, gt=0, description="Publish input RMS level every N appended segments")


class ReplayConfig(BaseModel):
    """Fragment length and cosmetic processing ranges for replays.

    Each replay draws a duration in [segment_min_sec, segment_max_sec], a low-pass
    cutoff in [cutoff_min_hz, cutoff_max_hz] and a pan magnitude in
    [pan_min, pan_max] with a random sign.
    """

    model_config = {"validate_assignment": True}

    segment_min_sec: float = Field(2.0, gt=0.0)
    segment_max_sec: float = Field(5.0, gt=0.0)

    cutoff_min_hz: float = Field(3000.0, gt=0.0)
    cutoff_max_hz: float = Field(4000.0, gt=0.0)
    filter_order: int = Field(2, ge=1, description="Butterworth order of the low-pass filter")

    pan_min: float = Field(0.2, ge=0.0, le=1.0)
    pan_max: float = Field(0.8, ge=0.0, le=1.0)

    replay_gain: float = Field(0.9, ge=0.0)

    test_tone_enabled: bool = Field(True, description="Play a short tone on session start to confirm output")
    test_tone_frequency_hz: float = 880.0
    test_tone_duration_sec: float = 0.12
    test_tone_gain: float = 0.06

    @model_validator(mode="after")
    def _check_ranges(self) -> "ReplayConfig":
        if self.segment_min_sec > self.segment_max_sec:
            raise ValueError("segment_min_sec must not exceed segment_max_sec")
        if self.cutoff_min_hz > self.cutoff_max_hz:
            raise ValueError("cutoff_min_hz must not exceed cutoff_max_hz")
        if self.pan_min > self.pan_max:
            raise ValueError("pan_min must not exceed pan_max")
        return self


MIN_CHECK_INTERVAL_MS = 1000


class TriggerConfig(BaseModel):
    """Dual trigger scheduler parameters.

    ``check_interval_ms`` and ``trigger_probability`` may be changed while a
    session runs (last write wins); the scheduler reads them on every tick.
    """

    model_config = {"validate_assignment": True}

    check_interval_ms: int = Field(10000, ge=MIN_CHECK_INTERVAL_MS, description="Probabilistic check period")
    trigger_probability: float = Field(0.05, ge=0.0, le=1.0, description="Chance of a replay on each check")
    min_segments_for_random_trigger: int = Field(10, ge=0, description="Archive must hold more than this many segments")

    guarantee_first_min_ms: int = Field(1000, gt=0)
    guarantee_first_max_ms: int = Field(30000, gt=0)
    guarantee_min_ms: int = Field(1000, gt=0)
    guarantee_max_ms: int = Field(60000, gt=0)


class GlobalAppConfig(BaseModel):
    """Root configuration object, the single source of truth for every service."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    replay: ReplayConfig = Field(default_factory=ReplayConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    logging: LoggingConfigModel = Field(default_factory=LoggingConfigModel)


CONFIG_FILE_NAME = "settings.yaml"
DEFAULT_CONFIG_DIR_NAME = "config"


def get_config_path(config_dir: Optional[str] = None, config_file: str = CONFIG_FILE_NAME) -> str:
    """Get configuration file path.

    Uses ``config_dir`` when given, otherwise the repository ``config`` directory.

    Args:
        config_dir: Optional custom config directory path.
        config_file: Configuration filename (defaults to settings.yaml).

    Returns:
        Absolute path to configuration file.
    """
    if config_dir:
        return os.path.join(config_dir, config_file)

    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))
    return os.path.join(project_root, DEFAULT_CONFIG_DIR_NAME, config_file)


def load_app_config(config_path: Optional[str] = None) -> GlobalAppConfig:
    """Load application configuration from YAML file with fallback to defaults.

    Returns the default GlobalAppConfig if the file is missing, empty, or lacks the
    'app' root key. YAML parsing errors and validation errors are logged and raised.

    Args:
        config_path: Optional explicit path to configuration file.

    Returns:
        Loaded GlobalAppConfig instance, or default instance when nothing usable is found.
    """
    actual_config_path = config_path or get_config_path()
    logger.debug(f"Loading application configuration from: {actual_config_path}")

    try:
        with open(actual_config_path, "r") as f:
            config_data = yaml.safe_load(f)
        if not config_data or "app" not in config_data:
            logger.warning(
                f"Configuration file {actual_config_path} is empty or missing 'app' root. Using default GlobalAppConfig."
            )
            return GlobalAppConfig()
        return GlobalAppConfig(**(config_data.get("app") or {}))
    except FileNotFoundError:
        logger.warning(f"Configuration file not found at {actual_config_path}. Using default GlobalAppConfig.")
        return GlobalAppConfig()
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML configuration file {actual_config_path}: {e}")
        raise
    except Exception as e:
        logger.error(f"Failed to load configuration from {actual_config_path}: {e}")
        raise
