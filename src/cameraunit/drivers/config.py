"""Driver configuration and factory.

Supports switching between real hardware drivers and digital twin drivers
for testing and development without physical hardware. Configuration is
plain Python; no files are read.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from cameraunit.devices.handle import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TIMEOUT_MARGIN,
    DeviceHandle,
    open_device,
    open_first_device,
)
from cameraunit.devices.telemetry import TelemetryHandle
from cameraunit.drivers.cameras import (
    ASICameraDriver,
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    TwinCameraSpec,
)
from cameraunit.errors import InvalidParameterError
from cameraunit.observability import get_logger
from cameraunit.utils.clock import Clock, SystemClock

logger = get_logger(__name__)

__all__ = [
    "DriverMode",
    "DriverConfig",
    "DriverFactory",
    "get_factory",
    "configure",
    "use_hardware",
    "use_digital_twin",
]


class DriverMode(Enum):
    """Driver mode selection."""

    HARDWARE = "hardware"  # Real ZWO ASI cameras
    DIGITAL_TWIN = "digital_twin"  # Simulated cameras


@dataclass
class DriverConfig:
    """Configuration for driver selection and device timing.

    Attributes:
        mode: HARDWARE for ASI cameras, DIGITAL_TWIN for simulation.
        twin: Simulation parameters for DIGITAL_TWIN mode.
        twin_cameras: Simulated camera models (None uses DEFAULT_CAMERAS).
        asi_library_path: Path to libASICamera2 (None falls back to the
            ZWO_ASI_LIB environment variable, then zwoasi's search).
        exposure_timeout_margin: Seconds beyond the exposure duration before
            a capture is declared FAILED with ExposureTimeoutError.
        telemetry_poll_interval: Seconds a telemetry reading stays fresh.

    Raises:
        InvalidParameterError: If a timing value is negative or not finite.
    """

    mode: DriverMode = DriverMode.DIGITAL_TWIN

    # Digital twin settings
    twin: DigitalTwinConfig = field(default_factory=DigitalTwinConfig)
    twin_cameras: Mapping[int, TwinCameraSpec] | None = None

    # Hardware settings
    asi_library_path: str | None = None

    # Device timing
    exposure_timeout_margin: float = DEFAULT_TIMEOUT_MARGIN
    telemetry_poll_interval: float = DEFAULT_POLL_INTERVAL

    def __post_init__(self) -> None:
        for name in ("exposure_timeout_margin", "telemetry_poll_interval"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise InvalidParameterError(f"{name} must be >= 0, got {value}")


class DriverFactory:
    """Factory for creating camera drivers and opening devices by config.

    Thread Safety:
        Not thread-safe. Configure once at startup.

    Example:
        >>> factory = DriverFactory()  # Digital twin mode
        >>> handle, telemetry = factory.open_camera(1)
        >>> frame = handle.capture()
    """

    def __init__(self, config: DriverConfig | None = None, clock: Clock | None = None):
        """Initialize driver factory.

        Args:
            config: Driver configuration. Defaults to DriverConfig()
                (digital twin).
            clock: Time source shared by simulated cameras and the device
                handles this factory opens.
        """
        self.config = config or DriverConfig()
        self.clock: Clock = clock or SystemClock()

    def create_camera_driver(self) -> CameraDriver:
        """Create the camera driver for the configured mode.

        Returns:
            ASICameraDriver in HARDWARE mode, DigitalTwinCameraDriver in
            DIGITAL_TWIN mode.
        """
        if self.config.mode == DriverMode.HARDWARE:
            logger.info("Creating ASI camera driver")
            return ASICameraDriver(library_path=self.config.asi_library_path)
        logger.info("Creating digital twin camera driver")
        return DigitalTwinCameraDriver(
            self.config.twin, self.config.twin_cameras, clock=self.clock
        )

    def open_camera(
        self,
        camera_id: int,
        driver: CameraDriver | None = None,
    ) -> tuple[DeviceHandle, TelemetryHandle]:
        """Open a camera with this factory's timing settings.

        Args:
            camera_id: Camera to open.
            driver: Driver to open it with. A new driver is created when
                omitted.

        Raises:
            DeviceInUseError: If the camera already has a DeviceHandle.
            InvalidParameterError: If camera_id is unknown.
            HardwareFaultError: If the camera cannot be opened.
        """
        return open_device(
            driver or self.create_camera_driver(),
            camera_id,
            clock=self.clock,
            timeout_margin=self.config.exposure_timeout_margin,
            poll_interval=self.config.telemetry_poll_interval,
        )

    def open_first_camera(
        self,
        driver: CameraDriver | None = None,
    ) -> tuple[DeviceHandle, TelemetryHandle]:
        """Open the first available camera with this factory's timing settings.

        Raises:
            DeviceNotReadyError: If no free camera is found.
            HardwareFaultError: If discovery or opening fails.
        """
        return open_first_device(
            driver or self.create_camera_driver(),
            clock=self.clock,
            timeout_margin=self.config.exposure_timeout_margin,
            poll_interval=self.config.telemetry_poll_interval,
        )


# =============================================================================
# Global Singleton
# =============================================================================

# Not thread-safe: configure once at startup before spawning threads.
_factory: DriverFactory | None = None


def get_factory() -> DriverFactory:
    """Return the global driver factory, creating a digital twin one first."""
    global _factory
    if _factory is None:
        _factory = DriverFactory()
    return _factory


def configure(config: DriverConfig, clock: Clock | None = None) -> None:
    """Replace the global factory with one using the given configuration."""
    global _factory
    _factory = DriverFactory(config, clock)
    logger.info("Driver factory configured", mode=config.mode.value)


def use_hardware(asi_library_path: str | None = None) -> None:
    """Switch the global factory to real ASI cameras."""
    configure(DriverConfig(mode=DriverMode.HARDWARE, asi_library_path=asi_library_path))


def use_digital_twin(twin: DigitalTwinConfig | None = None) -> None:
    """Switch the global factory to simulated cameras."""
    configure(
        DriverConfig(mode=DriverMode.DIGITAL_TWIN, twin=twin or DigitalTwinConfig())
    )
