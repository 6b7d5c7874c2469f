"""Device layer: role-restricted handles on an opened camera.

DeviceHandle: exclusive exposure control and the capture state machine
TelemetryHandle: shared, duplicable temperature and cooler access
"""

from cameraunit.devices.handle import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT_MARGIN,
    DeviceHandle,
    is_device_open,
    open_device,
    open_first_device,
)
from cameraunit.devices.telemetry import TelemetryChannel, TelemetryHandle

__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_TIMEOUT_MARGIN",
    "DeviceHandle",
    "TelemetryChannel",
    "TelemetryHandle",
    "is_device_open",
    "open_device",
    "open_first_device",
]
