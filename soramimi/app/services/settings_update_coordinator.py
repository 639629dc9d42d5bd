import inspect
import logging
from typing import Any, Dict

from pydantic import ValidationError

from soramimi.app.config.app_config import GlobalAppConfig
from soramimi.app.event_bus import EventBus
from soramimi.app.events.session_events import TriggerSettingsUpdatedEvent

logger = logging.getLogger(__name__)


class SettingsUpdateCoordinator:
    """
    Applies runtime settings changes coming from a configuration surface.

    Live settings are routed to the registered service, which clamps the value,
    updates the GlobalAppConfig and restarts whatever depends on it:
    - trigger.trigger_probability
    - trigger.check_interval_ms

    Any other known setting is written to the GlobalAppConfig and takes effect
    on the next session start. Last write wins; there is no versioning.
    """

    LIVE_SETTINGS = {
        "trigger.trigger_probability": ("session", "on_trigger_probability_updated", "probability"),
        "trigger.check_interval_ms": ("session", "on_check_interval_updated", "interval_ms"),
    }

    def __init__(self, event_bus: EventBus, config: GlobalAppConfig):
        self._event_bus = event_bus
        self._config = config
        self._service_registry: Dict[str, Any] = {}

        logger.debug("SettingsUpdateCoordinator initialized")

    def setup_subscriptions(self) -> None:
        """Subscribe to settings update events"""
        self._event_bus.subscribe(event_type=TriggerSettingsUpdatedEvent, handler=self._handle_settings_updated)
        logger.debug("SettingsUpdateCoordinator subscriptions configured")

    def register_service(self, service_name: str, service_instance: Any) -> None:
        self._service_registry[service_name] = service_instance
        logger.debug(f"Registered service for settings updates: {service_name}")

    async def _handle_settings_updated(self, event: TriggerSettingsUpdatedEvent) -> None:
        await self.apply(event.updated_settings)

    async def apply(self, updated_settings: Dict[str, Any]) -> None:
        for setting_path, value in updated_settings.items():
            try:
                if setting_path in self.LIVE_SETTINGS:
                    await self._propagate(setting_path, value)
                else:
                    self._update_config(setting_path, value)
            except (ValidationError, ValueError, TypeError, ArithmeticError) as e:
                logger.error(f"Rejected setting {setting_path}={value!r}: {e}")

    async def _propagate(self, setting_path: str, value: Any) -> None:
        service_name, method_name, argument = self.LIVE_SETTINGS[setting_path]
        service = self._service_registry.get(service_name)

        if service is None or not hasattr(service, method_name):
            logger.warning(f"No service registered for {setting_path}, updating config only")
            self._update_config(setting_path, value)
            return

        result = getattr(service, method_name)(**{argument: value})
        if inspect.isawaitable(result):
            await result

    def _update_config(self, setting_path: str, value: Any) -> None:
        category, _, key = setting_path.partition(".")
        config_obj = getattr(self._config, category, None)

        if config_obj is None or not key or not hasattr(config_obj, key):
            logger.warning(f"Unknown setting path: {setting_path}")
            return

        setattr(config_obj, key, value)
        logger.info(f"Setting updated: {setting_path}={value!r}")
