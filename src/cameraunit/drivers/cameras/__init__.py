"""Camera driver module.

Provides the sensor backends that DeviceHandle and TelemetryHandle drive:
ZWO ASI cameras (real hardware via zwoasi) and a digital twin for
development and testing without hardware.

Protocols:
    CameraDriver: Discovery and opening of cameras
    SensorBackend: Low-level exposure, read-out and housekeeping commands

Implementations:
    ASICameraDriver/ASISensorBackend: Real ZWO ASI cameras via SDK
    DigitalTwinCameraDriver/TwinSensorBackend: Simulated cooled detector
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from cameraunit.drivers.cameras.asi import (
    ASICameraDriver,
    ASISensorBackend,
)
from cameraunit.drivers.cameras.twin import (
    DEFAULT_CAMERAS,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    TwinCameraSpec,
    TwinFault,
    TwinSensorBackend,
)
from cameraunit.types import (
    ROI,
    CameraDescriptor,
    DeviceCapability,
    ExposureSetting,
    ExposureState,
    PixelFormat,
)


@runtime_checkable
class SensorBackend(Protocol):  # pragma: no cover
    """Protocol for an opened camera at the command level.

    Implemented by ASISensorBackend and TwinSensorBackend. A backend has no
    notion of capture state beyond what the hardware reports; the state
    machine, deadlines and validation live in DeviceHandle.

    Implementations must serialize their own bus access: the exposure
    commands are issued from the DeviceHandle's thread while housekeeping
    reads may arrive from any number of TelemetryHandle threads.

    Failures of the device or SDK are raised as HardwareFaultError.
    """

    @property
    def device_key(self) -> tuple[str, int]:
        """(driver kind, camera id) identifying the physical device."""
        ...

    @property
    def name(self) -> str:
        """Camera model name."""
        ...

    def capability(self) -> DeviceCapability:
        """Query the device limits.

        Returns:
            DeviceCapability describing exposure, gain, offset and ROI
            bounds, supported pixel formats and cooler availability.
        """
        ...

    def apply(
        self,
        setting: ExposureSetting,
        roi: ROI,
        pixel_format: PixelFormat,
    ) -> None:
        """Program exposure, region of interest and read-out format.

        Values are pre-validated against capability(). Backends may still
        raise InvalidParameterError for hardware-specific constraints
        (e.g. ROI alignment).
        """
        ...

    def set_flip(self, x: bool, y: bool) -> None:
        """Mirror subsequent read-outs horizontally (x) and/or vertically (y)."""
        ...

    def begin_exposure(self) -> None:
        """Start integrating with the last applied settings."""
        ...

    def exposure_state(self) -> ExposureState:
        """Non-blocking query of the current exposure."""
        ...

    def read_out(self) -> bytes:
        """Transfer the completed image in the applied pixel format.

        Only valid when exposure_state() reports SUCCESS.
        """
        ...

    def cancel(self) -> None:
        """Stop an in-progress exposure and discard its data. No-op if idle."""
        ...

    def read_temperature(self) -> float:
        """Detector temperature in °C."""
        ...

    def set_cooler_setpoint(self, celsius: float) -> None:
        """Set the cooler target temperature."""
        ...

    def set_cooler(self, on: bool) -> None:
        """Switch the cooler on or off."""
        ...

    def cooler_enabled(self) -> bool:
        """True if the cooler is switched on."""
        ...

    def cooler_power(self) -> float:
        """Cooler drive as a percentage (0-100)."""
        ...

    def close(self) -> None:
        """Release the device. Idempotent."""
        ...


@runtime_checkable
class CameraDriver(Protocol):  # pragma: no cover
    """Protocol for camera drivers (hardware abstraction layer).

    Implemented by ASICameraDriver (real hardware) and
    DigitalTwinCameraDriver (simulation). Applications normally go through
    cameraunit.devices.open_device() rather than calling open() directly,
    so that exclusivity is enforced.
    """

    @property
    def kind(self) -> str:
        """Short driver kind used in device keys (e.g. 'asi', 'twin')."""
        ...

    def list_devices(self) -> list[CameraDescriptor]:
        """Enumerate available cameras.

        Returns:
            One descriptor per camera; empty if none are connected.

        Raises:
            HardwareFaultError: If the SDK cannot be initialized.
        """
        ...

    def open(self, camera_id: int) -> SensorBackend:
        """Open a camera and return its backend.

        Raises:
            InvalidParameterError: If camera_id is unknown.
            HardwareFaultError: If the camera cannot be opened.
        """
        ...


__all__ = [
    # Protocols
    "CameraDriver",
    "SensorBackend",
    # ASI implementation
    "ASICameraDriver",
    "ASISensorBackend",
    # Digital twin implementation
    "DigitalTwinCameraDriver",
    "DigitalTwinConfig",
    "TwinCameraSpec",
    "TwinFault",
    "TwinSensorBackend",
    "DEFAULT_CAMERAS",
]
