"""Tests for MQTT publisher module."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from src.mqtt_publisher import (
    DEFAULT_BASE_TOPIC,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MQTTPublisher,
    create_mqtt_publisher,
)


@pytest.fixture
def mock_client():
    """Patched paho client that accepts every publish."""
    with patch("src.mqtt_publisher.mqtt.Client") as mock_client_class:
        client = MagicMock()
        result = MagicMock()
        result.rc = 0  # MQTT_ERR_SUCCESS
        client.publish.return_value = result
        mock_client_class.return_value = client
        yield client


@pytest.fixture
def connected(mock_client):
    publisher = MQTTPublisher(base_topic="home/health")
    publisher._connected.set()
    return publisher


def _published(mock_client) -> tuple[str, dict, dict]:
    args, kwargs = mock_client.publish.call_args
    return args[0], json.loads(args[1]), kwargs


class TestMQTTPublisherInit:
    """Tests for MQTTPublisher initialization."""

    def test_init_defaults(self):
        """Test initialization with default values."""
        publisher = MQTTPublisher()

        assert publisher.host == DEFAULT_HOST
        assert publisher.port == DEFAULT_PORT
        assert publisher.base_topic == "health_bridge"
        assert publisher.is_connected is False

    def test_init_strips_trailing_slash(self):
        """Test that the base topic is normalized."""
        assert MQTTPublisher(base_topic="home/health/").base_topic == "home/health"

    def test_init_sets_credentials(self, mock_client):
        """Test that credentials are passed to the client."""
        MQTTPublisher(username="user", password="pass")
        mock_client.username_pw_set.assert_called_once_with("user", "pass")

    def test_init_without_password_skips_auth(self, mock_client):
        """Test that a username alone does not enable authentication."""
        MQTTPublisher(username="user")
        mock_client.username_pw_set.assert_not_called()

    def test_init_sets_offline_last_will(self, mock_client):
        """Test that the broker is told to announce the bridge offline on a dropped connection."""
        MQTTPublisher(base_topic="home/health")

        args, kwargs = mock_client.will_set.call_args
        assert args[0] == "home/health/status"
        assert json.loads(args[1])["status"] == "offline"
        assert kwargs == {"qos": 1, "retain": True}


class TestMQTTPublisherConnect:
    """Tests for connection handling."""

    def test_connect_success(self, mock_client):
        """Test successful connection."""
        publisher = MQTTPublisher()

        def connect_side_effect(*args, **kwargs):
            # Stands in for the on_connect callback
            publisher._connected.set()

        mock_client.connect.side_effect = connect_side_effect

        assert publisher.connect(timeout=0.1) is True
        mock_client.connect.assert_called_once_with(DEFAULT_HOST, DEFAULT_PORT, keepalive=60)
        mock_client.loop_start.assert_called_once()

    def test_connect_timeout(self, mock_client):
        """Test connection timeout."""
        publisher = MQTTPublisher()

        assert publisher.connect(timeout=0.1) is False
        assert publisher.is_connected is False

    def test_connect_exception(self, mock_client):
        """Test connection exception handling."""
        mock_client.connect.side_effect = OSError("Connection refused")
        publisher = MQTTPublisher()

        assert publisher.connect(timeout=0.1) is False
        assert publisher.last_error == "Connection refused"

    def test_disconnect(self, connected, mock_client):
        """Test disconnect."""
        connected.disconnect()

        mock_client.loop_stop.assert_called_once()
        mock_client.disconnect.assert_called_once()
        assert connected.is_connected is False


class TestMQTTPublisherTopics:
    """Tests for topic generation."""

    def test_base_topic(self):
        """Test topic without extra levels."""
        assert MQTTPublisher(base_topic="home/health").get_topic() == "home/health"

    def test_levels(self):
        """Test topic with device and type levels."""
        publisher = MQTTPublisher(base_topic="home/health")
        assert publisher.get_topic("fitbit_001", "heart_rate") == "home/health/fitbit_001/heart_rate"

    def test_none_levels_skipped(self):
        """Test that missing levels are left out."""
        assert MQTTPublisher().get_topic(None, "status") == f"{DEFAULT_BASE_TOPIC}/status"

    @pytest.mark.parametrize(
        "level,expected",
        [
            ("user@example.com", "user_at_example.com"),
            ("Polar H10", "Polar_H10"),
            ("AA/BB", "AA_BB"),
            ("dev+1", "dev_1"),
            ("dev#1", "dev_1"),
        ],
    )
    def test_sanitizes_levels(self, level, expected):
        """Test that wildcard and separator characters are replaced."""
        assert MQTTPublisher(base_topic="h").get_topic(level) == f"h/{expected}"


class TestMQTTPublisherPublish:
    """Tests for publishing data."""

    def test_publish_not_connected(self, mock_client):
        """Test publish fails when not connected."""
        publisher = MQTTPublisher()

        assert publisher.publish_batch({"items": [], "batchId": "b1"}) is False
        mock_client.publish.assert_not_called()

    def test_publish_batch(self, connected, mock_client):
        """Test that batches go to the sync topic without retain."""
        batch = {"items": [{"id": "sync_1"}], "batchId": "batch_1", "timestamp": "2025-01-15T10:00:00"}

        assert connected.publish_batch(batch) is True

        topic, payload, kwargs = _published(mock_client)
        assert topic == "home/health/sync"
        assert payload == batch
        assert kwargs == {"qos": 1, "retain": False}

    def test_publish_point(self, connected, mock_client, high_bp_point):
        """Test that points go to the per-device topic and are retained."""
        assert connected.publish_point(high_bp_point.to_dict()) is True

        topic, payload, kwargs = _published(mock_client)
        assert topic == "home/health/omron_bp_001/blood_pressure"
        assert payload["value"] == {"systolic": 145, "diastolic": 92, "pulse": 80}
        assert "published_at" in payload
        assert kwargs["retain"] is True

    def test_publish_point_without_device(self, connected, mock_client):
        """Test that host-generated points use the host topic."""
        connected.publish_point({"type": "steps", "value": 10, "device_id": None}, qos=0, retain=False)

        topic, _, kwargs = _published(mock_client)
        assert topic == "home/health/host/steps"
        assert kwargs == {"qos": 0, "retain": False}

    def test_publish_summary(self, connected, mock_client):
        """Test summary publishing."""
        assert connected.publish_summary({"average_heart_rate": 70}) is True

        topic, payload, _ = _published(mock_client)
        assert topic == "home/health/summary"
        assert payload["average_heart_rate"] == 70

    def test_publish_failure(self, connected, mock_client):
        """Test that a broker error code is reported as failure."""
        mock_client.publish.return_value.rc = 4

        assert connected.publish_batch({"items": [], "batchId": "b"}) is False

    def test_publish_exception(self, connected, mock_client):
        """Test that client exceptions are reported as failure."""
        mock_client.publish.side_effect = ValueError("payload too large")

        assert connected.publish_summary({}) is False


class TestMQTTPublisherStatus:
    """Tests for status publishing."""

    def test_publish_status_not_connected(self, mock_client):
        """Test status publish when not connected."""
        assert MQTTPublisher().publish_status("online") is False

    def test_publish_status_success(self, connected, mock_client):
        """Test successful status publish."""
        assert connected.publish_status("synced", message="3 items") is True

        topic, payload, kwargs = _published(mock_client)
        assert topic == "home/health/status"
        assert payload["status"] == "synced"
        assert payload["message"] == "3 items"
        assert "timestamp" in payload
        assert kwargs["retain"] is True


class TestCreateMQTTPublisher:
    """Tests for factory function."""

    @patch("src.mqtt_publisher.MQTTPublisher")
    def test_create_mqtt_publisher_success(self, mock_publisher_class):
        """Test factory function success."""
        mock_publisher = MagicMock()
        mock_publisher.connect.return_value = True
        mock_publisher_class.return_value = mock_publisher

        result = create_mqtt_publisher(host="test.mqtt.com", port=1883, username="user", password="pass")

        mock_publisher_class.assert_called_once_with(
            host="test.mqtt.com",
            port=1883,
            username="user",
            password="pass",
            base_topic=DEFAULT_BASE_TOPIC,
        )
        assert result == mock_publisher

    @patch("src.mqtt_publisher.MQTTPublisher")
    def test_create_mqtt_publisher_connection_failure(self, mock_publisher_class):
        """Test factory function with connection failure."""
        mock_publisher = MagicMock()
        mock_publisher.connect.return_value = False
        mock_publisher_class.return_value = mock_publisher

        with pytest.raises(ConnectionError) as exc_info:
            create_mqtt_publisher(host="test.mqtt.com")

        assert "Failed to connect" in str(exc_info.value)


class TestMQTTPublisherCallbacks:
    """Tests for MQTT callbacks."""

    def test_on_connect_success(self):
        """Test on_connect callback with success."""
        publisher = MQTTPublisher()
        reason_code = MagicMock()
        reason_code.is_failure = False

        publisher._on_connect(MagicMock(), None, MagicMock(), reason_code, None)

        assert publisher.is_connected is True
        assert publisher.last_error is None

    def test_on_connect_failure(self):
        """Test on_connect callback with failure."""
        publisher = MQTTPublisher()
        reason_code = MagicMock()
        reason_code.is_failure = True

        publisher._on_connect(MagicMock(), None, MagicMock(), reason_code, None)

        assert publisher.is_connected is False
        assert publisher.last_error is not None

    def test_on_disconnect(self):
        """Test on_disconnect callback."""
        publisher = MQTTPublisher()
        publisher._connected.set()

        publisher._on_disconnect(MagicMock(), None, MagicMock(), MagicMock(), None)

        assert publisher.is_connected is False
