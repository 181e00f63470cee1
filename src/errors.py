"""Typed errors for the device integration pipeline.

Every error carries the component and action that produced it plus free-form
metadata (device id, batch size, ...) so it can be logged or reported without
losing context.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "PIPELINE_ERROR"

    def __init__(
        self,
        message: str,
        component: str | None = None,
        action: str | None = None,
        metadata: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.component = component
        self.action = action
        self.metadata = dict(metadata or {})
        self.cause = cause
        self.timestamp = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/reporting."""
        return {
            "code": self.code,
            "message": self.message,
            "component": self.component,
            "action": self.action,
            "metadata": self.metadata,
            "cause": repr(self.cause) if self.cause else None,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        if self.component and self.action:
            return f"[{self.component}.{self.action}] {self.message}"
        return self.message


class ConfigValidationError(PipelineError):
    """Configuration update rejected by validation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.field = field


class StorageError(PipelineError):
    """Durable storage could not be read or written."""

    code = "STORAGE_ERROR"


class DeviceError(PipelineError):
    """Device discovery or connection failure."""

    code = "DEVICE_ERROR"


class DeviceNotFoundError(DeviceError):
    """Device id is unknown to the adapter."""

    code = "DEVICE_NOT_FOUND"


class DeviceConnectionError(DeviceError):
    """Connection handshake or data stream failed."""

    code = "DEVICE_CONNECTION_ERROR"


class ScanInProgressError(DeviceError):
    """A scan was requested while another one is running."""

    code = "SCAN_IN_PROGRESS"


class SensorUnavailableError(DeviceError):
    """Sensor is disabled, missing on this host or cannot be read."""

    code = "SENSOR_UNAVAILABLE"


class SyncError(PipelineError):
    """Remote synchronization failure."""

    code = "NETWORK_ERROR"


class SyncTransportError(SyncError):
    """Transport-level failure (timeout, 5xx, broker error); retryable."""

    code = "SYNC_TRANSPORT_ERROR"


_DEVICE_COMPONENTS = {"DeviceScanner", "DeviceConnector", "CapabilityDetector", "SensorMonitor"}
_SYNC_COMPONENTS = {"DataSynchronizer", "HttpSyncTransport", "MqttSyncTransport"}


def wrap_error(
    exc: BaseException,
    component: str,
    action: str,
    metadata: dict[str, Any] | None = None,
) -> PipelineError:
    """Classify an arbitrary exception into the pipeline error hierarchy.

    Already-typed errors are returned unchanged so context set closer to the
    failure is never overwritten.

    Args:
        exc: Exception to classify
        component: Component that caught the exception
        action: Operation that was running
        metadata: Extra context for observability

    Returns:
        Typed pipeline error
    """
    if isinstance(exc, PipelineError):
        return exc

    message = str(exc) or exc.__class__.__name__
    kwargs: dict[str, Any] = {
        "component": component,
        "action": action,
        "metadata": metadata,
        "cause": exc,
    }

    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        if component in _SYNC_COMPONENTS:
            return SyncTransportError(message, **kwargs)
        if component in _DEVICE_COMPONENTS:
            return DeviceConnectionError(message, **kwargs)

    if component in _DEVICE_COMPONENTS:
        return DeviceError(message, **kwargs)
    if component in _SYNC_COMPONENTS:
        return SyncError(message, **kwargs)

    return PipelineError(message, **kwargs)
