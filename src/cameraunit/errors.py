"""Exception hierarchy for camera operations.

Every error raised by cameraunit derives from CameraError and from the
builtin exception that best matches its meaning, so callers can catch
either ``CameraError`` or e.g. ``ValueError``.

The core never retries. HardwareFaultError is terminal for the
DeviceHandle that raised it: close the handle and open the device again.
"""

from __future__ import annotations

__all__ = [
    "CameraError",
    "InvalidParameterError",
    "DeviceNotReadyError",
    "DeviceInUseError",
    "ExposureTimeoutError",
    "HardwareFaultError",
    "InsufficientSignalError",
]


class CameraError(Exception):
    """Base exception for camera operations."""

    pass


class InvalidParameterError(CameraError, ValueError):
    """Raised when a setting, ROI or configuration value is out of range."""

    pass


class DeviceNotReadyError(CameraError, RuntimeError):
    """Raised when an operation is not valid in the device's current state."""

    pass


class DeviceInUseError(DeviceNotReadyError):
    """Raised when opening a device that already has a DeviceHandle."""

    pass


class ExposureTimeoutError(CameraError, TimeoutError):
    """Raised when an exposure does not complete before its deadline."""

    pass


class HardwareFaultError(CameraError, RuntimeError):
    """Raised on an unrecoverable device condition."""

    pass


class InsufficientSignalError(CameraError, ValueError):
    """Raised when a frame carries no signal to base an exposure on."""

    pass
