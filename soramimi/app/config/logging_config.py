import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field


def get_cache_directory() -> str:
    """Get cache directory for run logs with dev/production awareness.

    Walks up from this file looking for pyproject.toml; when found (source checkout)
    a sibling 'cache' directory is used. Otherwise falls back to %LOCALAPPDATA% on
    Windows and XDG_CACHE_HOME (or ~/.cache) elsewhere.

    Returns:
        Absolute path to cache directory, created if it doesn't exist.
    """
    current_dir = Path(__file__).resolve().parent

    for _ in range(10):
        if (current_dir / "pyproject.toml").exists():
            cache_dir = current_dir / "cache"
            cache_dir.mkdir(exist_ok=True)
            return str(cache_dir)

        parent = current_dir.parent
        if parent == current_dir:
            break
        current_dir = parent

    if os.name == "nt":
        base_cache = os.environ.get("LOCALAPPDATA", os.path.expanduser("~"))
        cache_dir = os.path.join(base_cache, "soramimi", "cache")
    else:
        base_cache = os.environ.get("XDG_CACHE_HOME", os.path.expanduser("~/.cache"))
        cache_dir = os.path.join(base_cache, "soramimi")

    os.makedirs(cache_dir, exist_ok=True)
    return cache_dir


LOG_FILE_NAME = "soramimi.log"


def get_log_dir_for_run() -> str:
    """Create a timestamped (YYYYMMDD_HHMMSS) log directory for this run."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = os.path.join(get_cache_directory(), "logs", timestamp)
    os.makedirs(run_dir, exist_ok=True)
    return run_dir


class LoggingConfigModel(BaseModel):
    """Logging configuration controlling verbosity and output destinations.

    Attributes:
        level: Log verbosity level.
        format: Log message format string for the logging formatter.
        enable_logs: When false, a NullHandler silences everything.
        log_to_file: Also write a per-run log file under the cache directory.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s", description="Log message format")
    enable_logs: bool = Field(default=True, description="Enable logging to console (and file when log_to_file is set)")
    log_to_file: bool = Field(default=True, description="Write a timestamped log file for each run")


def setup_logging(config: Any) -> None:
    """Setup logging with a console handler and an optional per-run file handler.

    Args:
        config: Logging configuration object with enable_logs, level, format and log_to_file attributes.
    """
    enable_logs = getattr(config, "enable_logs", False)
    level = config.level.upper() if hasattr(config, "level") else "INFO"
    log_format = config.format if hasattr(config, "format") else "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    if not enable_logs:
        logging.basicConfig(level=logging.CRITICAL + 1, handlers=[logging.NullHandler()], force=True)
        return

    handlers = [logging.StreamHandler(sys.stdout)]

    log_file_path = None
    if getattr(config, "log_to_file", False):
        log_file_path = os.path.join(get_log_dir_for_run(), LOG_FILE_NAME)
        handlers.append(logging.FileHandler(log_file_path, encoding="utf-8"))

    logging.basicConfig(level=level, format=log_format, handlers=handlers, force=True)

    logging.getLogger(__name__).debug(f"Logging configured: level={level}, file={log_file_path}")
