"""Tests for src/config_manager.py - validated persisted configuration."""

import json
from unittest.mock import AsyncMock

import pytest

from src.config_manager import ConfigurationManager, DeviceIntegrationConfig, validate_updates
from src.errors import ConfigValidationError, StorageError
from src.local_store import CONFIG_KEY


@pytest.fixture
def manager(store):
    return ConfigurationManager(store)


class TestValidation:
    """Tests for validate_updates."""

    def test_valid_partial_update(self):
        """Test that valid fields are normalized."""
        validated = validate_updates(
            {"max_cache_size": 500.0, "enabled_sensors": ["gyroscope", "gyroscope"], "offline_mode": True}
        )
        assert validated == {"max_cache_size": 500, "enabled_sensors": ["gyroscope"], "offline_mode": True}

    @pytest.mark.parametrize(
        "updates,field",
        [
            ({"sync_interval_minutes": 5000}, "sync_interval_minutes"),
            ({"sync_interval_minutes": 0}, "sync_interval_minutes"),
            ({"health_data_retention_days": 400}, "health_data_retention_days"),
            ({"max_cache_size": 50}, "max_cache_size"),
            ({"max_cache_size": 150.5}, "max_cache_size"),
            ({"bluetooth_scan_duration": 500}, "bluetooth_scan_duration"),
            ({"max_retry_attempts": 11}, "max_retry_attempts"),
            ({"max_retry_attempts": True}, "max_retry_attempts"),
            ({"enabled_sensors": ["thermometer"]}, "enabled_sensors"),
            ({"enabled_sensors": "gyroscope"}, "enabled_sensors"),
            ({"offline_mode": "yes"}, "offline_mode"),
            ({"colour": "blue"}, "colour"),
        ],
    )
    def test_invalid_field_named(self, updates, field):
        """Test that each invalid field is rejected and named."""
        with pytest.raises(ConfigValidationError) as exc_info:
            validate_updates(updates)

        assert exc_info.value.field == field
        assert exc_info.value.code == "VALIDATION_ERROR"

    def test_fractional_sync_interval_allowed(self):
        """Test that the sync interval may be fractional."""
        assert validate_updates({"sync_interval_minutes": 1.5}) == {"sync_interval_minutes": 1.5}

    def test_rejects_non_mapping(self):
        """Test that updates must be a mapping."""
        with pytest.raises(ConfigValidationError):
            validate_updates(["sync_interval_minutes", 5])


class TestConfigurationManager:
    """Tests for ConfigurationManager."""

    @pytest.mark.asyncio
    async def test_defaults(self, manager):
        """Test default values before anything is stored."""
        await manager.initialize()
        config = manager.get_configuration()

        assert config == DeviceIntegrationConfig()
        assert config.sync_interval_minutes == 15
        assert config.enabled_sensors == ["accelerometer", "gyroscope"]
        assert config.offline_mode is False

    @pytest.mark.asyncio
    async def test_update_persists(self, manager, store):
        """Test that updates are persisted and reloaded."""
        await manager.update_configuration({"sync_interval_minutes": 30, "max_retry_attempts": 5})

        reloaded = ConfigurationManager(store)
        await reloaded.initialize()

        assert reloaded.get_configuration().sync_interval_minutes == 30
        assert reloaded.get_configuration().max_retry_attempts == 5

    @pytest.mark.asyncio
    async def test_invalid_update_changes_nothing(self, manager, store):
        """Test that one bad field rejects the whole update."""
        with pytest.raises(ConfigValidationError) as exc_info:
            await manager.update_configuration({"max_cache_size": 500, "sync_interval_minutes": 5000})

        assert exc_info.value.field == "sync_interval_minutes"
        assert exc_info.value.component == "ConfigurationManager"
        assert manager.get_configuration().max_cache_size == 1000
        assert await store.get_json(CONFIG_KEY) is None

    @pytest.mark.asyncio
    async def test_failed_persist_changes_nothing(self, manager):
        """Test that a storage failure leaves the live configuration untouched."""
        manager.store.set_json = AsyncMock(side_effect=StorageError("disk full"))

        with pytest.raises(StorageError):
            await manager.update_configuration({"offline_mode": True})

        assert manager.get_configuration().offline_mode is False

    @pytest.mark.asyncio
    async def test_get_configuration_returns_copy(self, manager):
        """Test that callers cannot mutate the live configuration."""
        manager.get_configuration().enabled_sensors.append("barometer")
        assert manager.get_configuration().enabled_sensors == ["accelerometer", "gyroscope"]

    @pytest.mark.asyncio
    async def test_invalid_stored_configuration_ignored(self, manager, store):
        """Test that a corrupt stored document falls back to defaults."""
        await store.set_json(CONFIG_KEY, {"sync_interval_minutes": -3})
        await manager.initialize()

        assert manager.get_configuration().sync_interval_minutes == 15

    @pytest.mark.asyncio
    async def test_stored_unknown_keys_ignored(self, manager, store):
        """Test that keys from other versions are dropped on load."""
        await store.set_json(CONFIG_KEY, {"sync_interval_minutes": 60, "legacy": 1})
        await manager.initialize()

        assert manager.get_configuration().sync_interval_minutes == 60

    @pytest.mark.asyncio
    async def test_convenience_updates(self, manager):
        """Test the single-field helpers."""
        await manager.update_enabled_sensors(["magnetometer"])
        await manager.update_sync_interval(60)
        config = await manager.toggle_offline_mode(True)

        assert config.enabled_sensors == ["magnetometer"]
        assert config.sync_interval_minutes == 60
        assert config.offline_mode is True

    @pytest.mark.asyncio
    async def test_reset_to_defaults(self, manager, store):
        """Test resetting overwrites the stored document."""
        await manager.update_configuration({"max_cache_size": 200})
        await manager.reset_to_defaults()

        assert manager.get_configuration().max_cache_size == 1000
        assert (await store.get_json(CONFIG_KEY))["max_cache_size"] == 1000

    @pytest.mark.asyncio
    async def test_component_configuration(self, manager):
        """Test projections for individual consumers."""
        assert manager.get_component_configuration("sync") == {
            "sync_interval_minutes": 15,
            "max_retry_attempts": 3,
            "offline_mode": False,
        }
        assert manager.get_component_configuration("bluetooth")["bluetooth_scan_duration"] == 10000
        assert set(manager.get_component_configuration("other")) == set(DeviceIntegrationConfig().to_dict())

    @pytest.mark.asyncio
    async def test_export_import(self, manager, store):
        """Test moving a configuration between installations."""
        await manager.update_configuration({"health_data_retention_days": 90})
        exported = manager.export_configuration()

        other = ConfigurationManager(store)
        config = await other.import_configuration(exported)

        assert json.loads(exported)["health_data_retention_days"] == 90
        assert config.health_data_retention_days == 90

    @pytest.mark.asyncio
    async def test_import_invalid_json(self, manager):
        """Test that malformed JSON is a validation error."""
        with pytest.raises(ConfigValidationError):
            await manager.import_configuration("{not json")

    def test_statistics(self, manager):
        """Test derived statistics."""
        stats = manager.get_configuration_statistics()

        assert stats["enabled_sensors_count"] == 2
        assert stats["sync_interval_hours"] == 0.25
        assert stats["cache_utilization"] == "1000 items"
