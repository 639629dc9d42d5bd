import argparse
import asyncio
import logging
import math
import os
import signal
import sys
import threading
import time
from typing import Any, Dict, List, Optional

from soramimi.app.config.app_config import GlobalAppConfig, load_app_config
from soramimi.app.config.logging_config import setup_logging
from soramimi.app.errors import CaptureAcquisitionError
from soramimi.app.event_bus import EventBus
from soramimi.app.events.replay_events import ManualReplayRequestEvent
from soramimi.app.events.session_events import TriggerSettingsUpdatedEvent
from soramimi.app.services.audio.devices import describe_devices
from soramimi.app.services.settings_update_coordinator import SettingsUpdateCoordinator
from soramimi.app.services.shutdown_coordinator import ShutdownCoordinator
from soramimi.app.services.soramimi_session import SoramimiSession
from soramimi.app.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)

CONSOLE_HELP = "Commands: t = replay now, p <percent> = probability, i <seconds> = check interval, q = quit"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="soramimi",
        description="Capture live audio and occasionally replay a distorted fragment of what was just heard.",
    )
    parser.add_argument("--config", help="Path to settings.yaml (defaults to config/settings.yaml)")
    parser.add_argument("--probability", type=float, help="Replay probability per check, in percent (0-100)")
    parser.add_argument("--interval", type=float, help="Seconds between probabilistic checks (minimum 1)")
    parser.add_argument("--no-monitor", action="store_true", help="Do not route the live microphone to the output")
    parser.add_argument("--no-test-tone", action="store_true", help="Skip the start-up test tone")
    parser.add_argument("--input-device", type=int, help="sounddevice input device index")
    parser.add_argument("--output-device", type=int, help="sounddevice output device index")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--list-devices", action="store_true", help="Print available audio devices and exit")
    return parser


def apply_cli_overrides(config: GlobalAppConfig, args: argparse.Namespace) -> GlobalAppConfig:
    """Apply command line options on top of the loaded configuration.

    Out-of-range probability and interval values are clamped the same way the
    runtime configuration surface clamps them.
    """
    if args.probability is not None:
        config.trigger.trigger_probability = min(1.0, max(0.0, args.probability / 100.0))
    if args.interval is not None:
        config.trigger.check_interval_ms = max(1000, int(args.interval * 1000))
    if args.no_monitor:
        config.audio.monitoring_enabled = False
    if args.no_test_tone:
        config.replay.test_tone_enabled = False
    if args.input_device is not None:
        config.audio.input_device = args.input_device
    if args.output_device is not None:
        config.audio.output_device = args.output_device
    if args.log_level:
        config.logging.level = args.log_level
    return config


def parse_console_command(line: str) -> Optional[Dict[str, Any]]:
    """Translate one console line into an action.

    Returns:
        ``{"action": "replay"}``, ``{"action": "quit"}``,
        ``{"action": "settings", "settings": {...}}`` or None for unknown input.
    """
    parts = line.strip().split()
    if not parts:
        return None

    command = parts[0].lower()
    if command == "t":
        return {"action": "replay"}
    if command in ("q", "quit", "exit"):
        return {"action": "quit"}
    if command in ("p", "i") and len(parts) == 2:
        try:
            value = float(parts[1])
        except ValueError:
            return None
        if not math.isfinite(value):
            return None
        if command == "p":
            return {"action": "settings", "settings": {"trigger.trigger_probability": value / 100.0}}
        return {"action": "settings", "settings": {"trigger.check_interval_ms": int(value * 1000)}}
    return None


def _start_console_reader(event_bus: EventBus, shutdown_coordinator: ShutdownCoordinator) -> threading.Thread:
    """Read operator commands from stdin on a daemon thread."""

    def _reader() -> None:
        for line in sys.stdin:
            command = parse_console_command(line)
            if command is None:
                print(CONSOLE_HELP)
                continue
            if command["action"] == "replay":
                event_bus.publish_threadsafe(ManualReplayRequestEvent())
            elif command["action"] == "settings":
                event_bus.publish_threadsafe(TriggerSettingsUpdatedEvent(updated_settings=command["settings"]))
            elif command["action"] == "quit":
                shutdown_coordinator.request_shutdown(reason="Operator quit", source="console")
                return
        shutdown_coordinator.request_shutdown(reason="Console input closed", source="console")

    thread = threading.Thread(target=_reader, name="ConsoleReader", daemon=True)
    thread.start()
    return thread


def _setup_signal_handlers(shutdown_coordinator: ShutdownCoordinator) -> None:
    """Route SIGINT/SIGTERM to the shutdown coordinator, with a forced exit after 5 seconds."""

    def signal_handler(signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}")
        if not shutdown_coordinator.request_shutdown(reason=f"Received system signal {signum}", source="signal_handler"):
            return

        def force_exit() -> None:
            time.sleep(5)
            logger.error("Force exiting due to shutdown timeout")
            os._exit(1)

        threading.Thread(target=force_exit, daemon=True).start()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)


async def run(config: GlobalAppConfig, interactive: bool = True) -> int:
    """Run one capture session until shutdown is requested.

    Returns:
        Process exit code (0 on clean shutdown, 1 if audio devices could not be opened).
    """
    loop = asyncio.get_running_loop()
    event_bus = EventBus()
    await event_bus.start_worker()

    shutdown_coordinator = ShutdownCoordinator(event_bus=event_bus, loop=loop)
    _setup_signal_handlers(shutdown_coordinator=shutdown_coordinator)

    status_reporter = StatusReporter(event_bus)
    status_reporter.setup_subscriptions()

    session = SoramimiSession(event_bus=event_bus, config=config)
    session.setup_subscriptions()

    settings_coordinator = SettingsUpdateCoordinator(event_bus=event_bus, config=config)
    settings_coordinator.register_service("session", session)
    settings_coordinator.setup_subscriptions()

    exit_code = 0
    try:
        await session.start()
        if interactive:
            print(CONSOLE_HELP)
            _start_console_reader(event_bus, shutdown_coordinator)
        await shutdown_coordinator.wait_for_shutdown()
    except CaptureAcquisitionError as e:
        logger.critical(f"Could not access audio devices: {e}")
        exit_code = 1
    finally:
        await session.stop()
        logger.info(f"Final status: {status_reporter.snapshot()}")
        await event_bus.stop_worker()

    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    if args.list_devices:
        print(describe_devices())
        return 0

    config = apply_cli_overrides(load_app_config(args.config), args)
    setup_logging(config=config.logging)
    logger.debug(f"Effective configuration: {config.model_dump()}")

    return asyncio.run(run(config, interactive=sys.stdin.isatty()))


if __name__ == "__main__":
    sys.exit(main())
