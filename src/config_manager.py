"""Validated, persisted device integration configuration.

Every update goes through :meth:`ConfigurationManager.update_configuration`:
all fields are validated first and the update is applied only if every field
passes, so a partially valid update never changes anything.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from numbers import Real
from typing import Any

from src.errors import ConfigValidationError
from src.local_store import CONFIG_KEY, LocalStore

logger = logging.getLogger(__name__)

VALID_SENSORS = ("accelerometer", "gyroscope", "magnetometer", "barometer")

# field -> (min, max, integer only)
RANGES: dict[str, tuple[float, float, bool]] = {
    "health_data_retention_days": (1, 365, True),
    "sync_interval_minutes": (1, 1440, False),
    "max_cache_size": (100, 10000, True),
    "bluetooth_scan_duration": (1000, 60000, True),
    "max_retry_attempts": (1, 10, True),
}


@dataclass
class DeviceIntegrationConfig:
    """Tunable pipeline parameters."""

    health_data_retention_days: int = 30
    sync_interval_minutes: float = 15
    max_cache_size: int = 1000
    enabled_sensors: list[str] = field(default_factory=lambda: ["accelerometer", "gyroscope"])
    bluetooth_scan_duration: int = 10000  # ms
    max_retry_attempts: int = 3
    offline_mode: bool = False

    def copy(self) -> DeviceIntegrationConfig:
        return dataclasses.replace(self, enabled_sensors=list(self.enabled_sensors))

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        data["enabled_sensors"] = list(self.enabled_sensors)
        return data


FIELDS = tuple(f.name for f in dataclasses.fields(DeviceIntegrationConfig))


def validate_updates(updates: dict[str, Any]) -> dict[str, Any]:
    """Validate a partial configuration.

    Args:
        updates: Field name to new value

    Returns:
        Normalized updates

    Raises:
        ConfigValidationError: On the first invalid field, naming it
    """
    if not isinstance(updates, dict):
        raise ConfigValidationError("Configuration update must be a mapping")

    validated: dict[str, Any] = {}
    for key, value in updates.items():
        if key not in FIELDS:
            raise ConfigValidationError(f"Unknown configuration field: {key}", field=key)

        if key in RANGES:
            low, high, integer = RANGES[key]
            if not isinstance(value, Real) or isinstance(value, bool):
                raise ConfigValidationError(f"{key} must be a number, got {value!r}", field=key)
            if integer and value != int(value):
                raise ConfigValidationError(f"{key} must be a whole number, got {value!r}", field=key)
            if not low <= value <= high:
                raise ConfigValidationError(f"{key} must be between {low} and {high}, got {value}", field=key)
            validated[key] = int(value) if integer else value

        elif key == "enabled_sensors":
            if isinstance(value, str) or not isinstance(value, (list, tuple)):
                raise ConfigValidationError("enabled_sensors must be a list of sensor names", field=key)
            invalid = [s for s in value if s not in VALID_SENSORS]
            if invalid:
                raise ConfigValidationError(f"Invalid sensors: {', '.join(map(str, invalid))}", field=key)
            validated[key] = list(dict.fromkeys(value))

        elif key == "offline_mode":
            if not isinstance(value, bool):
                raise ConfigValidationError(f"offline_mode must be true or false, got {value!r}", field=key)
            validated[key] = value

    return validated


class ConfigurationManager:
    """Owner of the DeviceIntegrationConfig."""

    component = "ConfigurationManager"

    def __init__(self, store: LocalStore):
        self.store = store
        self._config = DeviceIntegrationConfig()

    async def initialize(self) -> None:
        """Load the persisted configuration over the defaults."""
        logger.info("Initializing configuration manager...")
        saved = await self.store.get_json(CONFIG_KEY)
        if not saved:
            return

        if not isinstance(saved, dict):
            logger.warning("Ignoring stored configuration: not a JSON object")
            return

        known = {k: v for k, v in saved.items() if k in FIELDS}
        try:
            validated = validate_updates(known)
        except ConfigValidationError as e:
            logger.warning(f"Ignoring invalid stored configuration: {e}")
            return
        self._config = dataclasses.replace(self._config, **validated)
        logger.info("Loaded stored configuration")

    def get_configuration(self) -> DeviceIntegrationConfig:
        """Copy of the current configuration."""
        return self._config.copy()

    async def update_configuration(self, updates: dict[str, Any]) -> DeviceIntegrationConfig:
        """Validate, apply and persist a partial configuration.

        Args:
            updates: Field name to new value

        Returns:
            Copy of the new configuration

        Raises:
            ConfigValidationError: If any field is invalid; nothing is applied
            StorageError: If persisting failed; nothing is applied
        """
        try:
            validated = validate_updates(updates)
        except ConfigValidationError as e:
            e.component = self.component
            e.action = "update_configuration"
            e.metadata = {"updates": dict(updates) if isinstance(updates, dict) else updates}
            logger.warning(f"Rejected configuration update: {e.message}")
            raise

        candidate = dataclasses.replace(self._config.copy(), **validated)
        await self.store.set_json(CONFIG_KEY, candidate.to_dict())
        self._config = candidate
        logger.info(f"Configuration updated: {', '.join(validated) or 'no changes'}")
        return candidate.copy()

    async def reset_to_defaults(self) -> DeviceIntegrationConfig:
        defaults = DeviceIntegrationConfig()
        await self.store.set_json(CONFIG_KEY, defaults.to_dict())
        self._config = defaults
        logger.info("Configuration reset to defaults")
        return defaults.copy()

    async def update_enabled_sensors(self, sensors: list[str]) -> DeviceIntegrationConfig:
        return await self.update_configuration({"enabled_sensors": sensors})

    async def update_sync_interval(self, interval_minutes: float) -> DeviceIntegrationConfig:
        return await self.update_configuration({"sync_interval_minutes": interval_minutes})

    async def toggle_offline_mode(self, enabled: bool) -> DeviceIntegrationConfig:
        config = await self.update_configuration({"offline_mode": enabled})
        logger.info(f"Offline mode {'enabled' if enabled else 'disabled'}")
        return config

    def get_component_configuration(self, component: str) -> dict[str, Any]:
        """Project the fields one consumer needs.

        Args:
            component: ``sensors``, ``sync``, ``bluetooth`` or ``health``;
                anything else returns the full configuration

        Returns:
            Dictionary with copies of the relevant fields
        """
        c = self._config
        if component == "sensors":
            return {"enabled_sensors": list(c.enabled_sensors), "max_cache_size": c.max_cache_size}
        if component == "sync":
            return {
                "sync_interval_minutes": c.sync_interval_minutes,
                "max_retry_attempts": c.max_retry_attempts,
                "offline_mode": c.offline_mode,
            }
        if component == "bluetooth":
            return {
                "bluetooth_scan_duration": c.bluetooth_scan_duration,
                "max_retry_attempts": c.max_retry_attempts,
            }
        if component == "health":
            return {
                "health_data_retention_days": c.health_data_retention_days,
                "max_cache_size": c.max_cache_size,
            }
        return c.to_dict()

    def export_configuration(self) -> str:
        return json.dumps(self._config.to_dict(), indent=2)

    async def import_configuration(self, config_json: str) -> DeviceIntegrationConfig:
        """Apply a configuration exported with :meth:`export_configuration`."""
        try:
            imported = json.loads(config_json)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                f"Invalid configuration JSON: {e}",
                component=self.component,
                action="import_configuration",
                cause=e,
            ) from e
        config = await self.update_configuration(imported)
        logger.info("Configuration imported successfully")
        return config

    def get_configuration_statistics(self) -> dict[str, Any]:
        c = self._config
        return {
            "enabled_sensors_count": len(c.enabled_sensors),
            "sync_interval_hours": c.sync_interval_minutes / 60,
            "retention_weeks": c.health_data_retention_days / 7,
            "cache_utilization": f"{c.max_cache_size} items",
            "offline_mode": c.offline_mode,
        }

