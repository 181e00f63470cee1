"""MQTT publisher for the health bridge.

Sync batches, live data points, the latest health summary and the bridge
status are published as JSON below one base topic, so home automation systems
(Home Assistant, OpenHAB, etc.) or a remote ingest service can consume them:

    <base>/sync                  sync batches (QoS 1, not retained)
    <base>/<device>/<type>       live data points (retained)
    <base>/summary               latest health summary (retained)
    <base>/status                online / offline / synced (retained, also the last will)
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 1883
DEFAULT_BASE_TOPIC = "health_bridge"
KEEPALIVE_SECONDS = 60

# Characters that are separators or wildcards in MQTT topics
_TOPIC_ESCAPES = str.maketrans({"@": "_at_", " ": "_", "/": "_", "+": "_", "#": "_"})


def _status_payload(status: str, message: str | None = None) -> str:
    return json.dumps({"status": status, "message": message, "timestamp": datetime.now().isoformat()})


class MQTTPublisher:
    """Thread-backed paho client publishing bridge data as JSON.

    The paho network loop runs in its own thread; every publish method is
    synchronous and returns whether the broker accepted the message, so async
    callers wrap them in ``asyncio.to_thread``.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        username: str | None = None,
        password: str | None = None,
        base_topic: str = DEFAULT_BASE_TOPIC,
        client_id: str | None = None,
    ):
        """Initialize MQTT publisher.

        Args:
            host: MQTT broker hostname/IP
            port: MQTT broker port
            username: Optional authentication username
            password: Optional authentication password (both are needed to authenticate)
            base_topic: Topic prefix for every message
            client_id: Optional client ID (derived from the clock if omitted)
        """
        self.host = host
        self.port = port
        self.base_topic = base_topic.rstrip("/")
        self._connected = threading.Event()
        self._last_error: str | None = None

        self._client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=client_id or f"health-bridge-{datetime.now().timestamp():.0f}",
        )
        if username and password:
            self._client.username_pw_set(username, password)
        # Broker announces us offline if the connection drops without a disconnect
        self._client.will_set(
            self.get_topic("status"),
            _status_payload("offline", "Connection lost"),
            qos=1,
            retain=True,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect

    # ============== CONNECTION ==============

    def _on_connect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: mqtt.ConnectFlags,
        reason_code: ReasonCode,
        _properties: Properties | None = None,
    ) -> None:
        if reason_code.is_failure:
            self._connected.clear()
            self._last_error = str(reason_code)
            logger.error(f"MQTT broker {self.host}:{self.port} refused connection: {reason_code}")
            return
        self._last_error = None
        self._connected.set()
        logger.info(f"Connected to MQTT broker {self.host}:{self.port}")

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _flags: mqtt.DisconnectFlags,
        reason_code: ReasonCode,
        _properties: Properties | None = None,
    ) -> None:
        self._connected.clear()
        if reason_code.is_failure:
            logger.warning(f"MQTT connection lost: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def connect(self, timeout: float = 10.0) -> bool:
        """Connect and start the network loop.

        Args:
            timeout: Seconds to wait for the broker's CONNACK

        Returns:
            True once the broker accepted the connection
        """
        try:
            self._client.connect(self.host, self.port, keepalive=KEEPALIVE_SECONDS)
        except OSError as e:
            self._last_error = str(e)
            logger.error(f"Failed to connect to MQTT broker {self.host}:{self.port}: {e}")
            return False

        self._client.loop_start()
        if not self._connected.wait(timeout):
            logger.error(f"No answer from MQTT broker within {timeout}s (last error: {self._last_error})")
            return False
        return True

    def disconnect(self) -> None:
        """Stop the network loop and close the connection."""
        try:
            self._client.loop_stop()
            self._client.disconnect()
        except (OSError, ValueError) as e:
            logger.warning(f"Error during MQTT disconnect: {e}")
        finally:
            self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def last_error(self) -> str | None:
        return self._last_error

    # ============== PUBLISHING ==============

    def get_topic(self, *levels: str | None) -> str:
        """Join levels below the base topic; empty levels are skipped."""
        parts = [self.base_topic] + [str(level).translate(_TOPIC_ESCAPES) for level in levels if level]
        return "/".join(parts)

    def _publish(self, topic: str, payload: dict | str, qos: int = 1, retain: bool = False) -> bool:
        if not self.is_connected:
            logger.error(f"Cannot publish to {topic}: not connected to MQTT broker")
            return False

        body = payload if isinstance(payload, str) else json.dumps(payload, default=str)
        try:
            info = self._client.publish(topic, body, qos=qos, retain=retain)
        except (OSError, ValueError) as e:
            logger.error(f"MQTT publish to {topic} failed: {e}")
            return False

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")
            return False
        return True

    def publish_batch(self, batch: dict, qos: int = 1) -> bool:
        """Publish a sync batch ``{items, batchId, timestamp}``."""
        topic = self.get_topic("sync")
        if not self._publish(topic, batch, qos=qos, retain=False):
            return False
        logger.info(f"Published batch {batch.get('batchId')} to {topic}: {len(batch.get('items', []))} items")
        return True

    def publish_point(self, point: dict, retain: bool = True, qos: int = 1) -> bool:
        """Publish one data point (``HealthDataPoint.to_dict()``, optionally with its analysis).

        Points without a device id are published under ``host``.
        """
        topic = self.get_topic(point.get("device_id") or "host", point.get("type"))
        if not self._publish(topic, {**point, "published_at": datetime.now().isoformat()}, qos=qos, retain=retain):
            return False
        logger.debug(f"Published to {topic}: {point.get('value')} {point.get('unit', '')}")
        return True

    def publish_summary(self, summary: dict, retain: bool = True) -> bool:
        return self._publish(
            self.get_topic("summary"),
            {**summary, "published_at": datetime.now().isoformat()},
            retain=retain,
        )

    def publish_status(self, status: str, message: str | None = None, retain: bool = True) -> bool:
        """Publish bridge status, e.g. "online", "offline" or "synced"."""
        return self._publish(self.get_topic("status"), _status_payload(status, message), retain=retain)


def create_mqtt_publisher(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    username: str | None = None,
    password: str | None = None,
    base_topic: str = DEFAULT_BASE_TOPIC,
) -> MQTTPublisher:
    """Create an MQTTPublisher and connect it.

    Raises:
        ConnectionError: If the broker cannot be reached
    """
    publisher = MQTTPublisher(
        host=host,
        port=port,
        username=username,
        password=password,
        base_topic=base_topic,
    )

    if not publisher.connect():
        raise ConnectionError(f"Failed to connect to MQTT broker at {host}:{port}")

    return publisher
