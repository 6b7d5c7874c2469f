"""Digital Twin Camera Driver - Simulated Hardware for Testing.

Provides a simulated scientific camera that follows the SensorBackend
protocol, so the full capture, telemetry and exposure-optimization loop
runs without physical hardware.

Simulation model:
    Scene: Sky background plus a synthetic star field (OpenCV-drawn discs,
        Gaussian-blurred), generated once per opened camera from a seed.
    Signal: scene flux x illumination x exposure, Poisson shot noise plus
        Gaussian read noise, summed over bins, scaled by gain and raised by
        the black-level offset, then clipped at the format's full well.
    Timing: An exposure completes after duration + readout_time on the
        injected Clock, so tests advance time instead of sleeping.
    Thermal: First-order approach of the detector temperature towards the
        cooler setpoint (cooler on) or ambient (cooler off).
    Faults: Injectable hang, failed exposure and hardware fault.

Classes:
    TwinFault: Fault injection modes
    TwinCameraSpec: Simulated camera model
    DigitalTwinConfig: Simulation parameters
    DigitalTwinCameraDriver: Driver for discovering and opening twins
    TwinSensorBackend: Opened simulated camera

Constants:
    DEFAULT_CAMERAS: Pre-configured simulated cameras

Example:
    from cameraunit.drivers.cameras.twin import DigitalTwinCameraDriver
    from cameraunit.devices import open_device

    driver = DigitalTwinCameraDriver()
    handle, telemetry = open_device(driver, 1)
    frame = handle.capture()
"""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, final

import cv2
import numpy as np

from cameraunit.errors import (
    DeviceNotReadyError,
    HardwareFaultError,
    InvalidParameterError,
)
from cameraunit.observability import get_logger
from cameraunit.types import (
    ROI,
    CameraDescriptor,
    DeviceCapability,
    ExposureSetting,
    ExposureState,
    PixelFormat,
    SensorBounds,
    ValueRange,
)
from cameraunit.utils.clock import Clock, SystemClock
from cameraunit.utils.image import encode_pixels

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = [
    "DigitalTwinCameraDriver",
    "TwinSensorBackend",
    "DigitalTwinConfig",
    "TwinCameraSpec",
    "TwinFault",
    "DEFAULT_CAMERAS",
]

# =============================================================================
# Constants
# =============================================================================

DRIVER_KIND = "twin"

# 16-bit to 8-bit full-scale ratio (65535 / 255)
_ADU16_PER_ADU8 = 257.0

# Black-level offset units, in 16-bit ADU per offset count
_ADU_PER_OFFSET = 16.0

# Gain is in 0.1 dB steps of amplitude: gain 200 == 20 dB == x10
_GAIN_DB_STEPS = 200.0

# Hysteresis before the simulated cooler drops from full power to hold power
_COOLER_SETTLE_C = 1.0


class TwinFault(Enum):
    """Fault injection modes for the digital twin."""

    NONE = "none"
    HANG = "hang"  # Exposure never completes
    EXPOSURE_FAILED = "exposure_failed"  # Hardware reports a failed exposure
    HARDWARE_FAULT = "hardware_fault"  # Every command raises HardwareFaultError


@dataclass(frozen=True)
class TwinCameraSpec:
    """Model of a simulated camera.

    Attributes:
        name: Camera model name.
        width: Sensor width in pixels.
        height: Sensor height in pixels.
        pixel_size_um: Pixel pitch in micrometres.
        formats: Supported pixel formats, device default first.
        max_bin: Largest binning factor.
        exposure_range: Exposure limits in seconds.
        gain_range: Raw gain limits.
        offset_range: Raw black-level limits.
        has_cooler: True for a cooled detector.
        cooler_range: Setpoint limits in °C for cooled detectors.
    """

    name: str
    width: int
    height: int
    pixel_size_um: float
    formats: tuple[PixelFormat, ...] = (PixelFormat.MONO16, PixelFormat.MONO8)
    max_bin: int = 4
    exposure_range: ValueRange = ValueRange(32e-6, 2000.0)
    gain_range: ValueRange = ValueRange(0, 600)
    offset_range: ValueRange = ValueRange(0, 100)
    has_cooler: bool = False
    cooler_range: ValueRange | None = None

    def capability(self) -> DeviceCapability:
        """DeviceCapability reported by a twin of this model."""
        return DeviceCapability(
            name=self.name,
            exposure_range=self.exposure_range,
            gain_range=self.gain_range,
            offset_range=self.offset_range,
            roi_bounds=SensorBounds(self.width, self.height, self.max_bin),
            supported_formats=self.formats,
            has_cooler=self.has_cooler,
            cooler_range=self.cooler_range if self.has_cooler else None,
            pixel_size_um=self.pixel_size_um,
        )


@dataclass
class DigitalTwinConfig:
    """Configuration for digital twin camera behavior.

    Fluxes are in 16-bit ADU per second per unbinned pixel at gain 0.
    """

    seed: int | None = 0
    star_count: int = 80
    star_flux: float = 4000.0  # Brightest star, peak
    sky_flux: float = 20.0  # Background
    read_noise: float = 3.0  # ADU rms
    readout_time: float = 0.0  # Seconds added after the exposure
    ambient_temperature: float = 20.0  # °C
    cooler_time_constant: float = 60.0  # Seconds
    cooler_max_delta: float = 40.0  # Deepest cooling below ambient, °C
    fault: TwinFault = TwinFault.NONE


# Default simulated cameras
# Camera 0: uncooled colour planetary/guide camera
# Camera 1: cooled mono deep-sky camera
DEFAULT_CAMERAS: Mapping[int, TwinCameraSpec] = MappingProxyType(
    {
        0: TwinCameraSpec(
            name="ASI120MC-S (Twin)",
            width=1280,
            height=960,
            pixel_size_um=3.75,
            formats=(
                PixelFormat.BAYER_RG8,
                PixelFormat.BAYER_RG16,
                PixelFormat.RGB8,
                PixelFormat.MONO8,
            ),
            max_bin=2,
            exposure_range=ValueRange(64e-6, 2000.0),
            gain_range=ValueRange(0, 100),
        ),
        1: TwinCameraSpec(
            name="ASI533MM Pro (Twin)",
            width=3008,
            height=3008,
            pixel_size_um=3.76,
            formats=(PixelFormat.MONO16, PixelFormat.MONO8),
            max_bin=4,
            exposure_range=ValueRange(32e-6, 2000.0),
            gain_range=ValueRange(0, 400),
            offset_range=ValueRange(0, 80),
            has_cooler=True,
            cooler_range=ValueRange(-40.0, 30.0),
        ),
    }
)


@dataclass(frozen=True, slots=True)
class _ExposureJob:
    """Settings latched when an exposure starts."""

    setting: ExposureSetting
    roi: ROI
    pixel_format: PixelFormat
    illumination: float
    started: float
    flip: tuple[bool, bool] = (False, False)


def _render_scene(spec: TwinCameraSpec, config: DigitalTwinConfig) -> NDArray[Any]:
    """Noise-free flux image (ADU/s per pixel) of the simulated sky."""
    rng = np.random.default_rng(config.seed)
    stars: NDArray[Any] = np.zeros((spec.height, spec.width), dtype=np.float32)

    xs = rng.integers(0, spec.width, config.star_count)
    ys = rng.integers(0, spec.height, config.star_count)
    fluxes = config.star_flux * rng.uniform(0.05, 1.0, config.star_count) ** 2
    radii = rng.integers(1, 4, config.star_count)
    for x, y, flux, radius in zip(xs, ys, fluxes, radii, strict=True):
        cv2.circle(stars, (int(x), int(y)), int(radius), (float(flux),), cv2.FILLED)

    stars = cv2.GaussianBlur(stars, (0, 0), sigmaX=1.2)
    return stars + np.float32(config.sky_flux)


@final
class DigitalTwinCameraDriver:
    """Digital twin camera driver for development without hardware.

    Example:
        driver = DigitalTwinCameraDriver(DigitalTwinConfig(seed=42))
        backend = driver.open(1)

        # Simulate clouds passing
        driver.sensor(1).set_illumination(0.3)
    """

    __slots__ = ("config", "_cameras", "_clock", "_open")

    kind = DRIVER_KIND

    def __init__(
        self,
        config: DigitalTwinConfig | None = None,
        cameras: Mapping[int, TwinCameraSpec] | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize digital twin camera driver.

        Args:
            config: Simulation parameters. Defaults to DigitalTwinConfig().
            cameras: Camera models by camera id. Defaults to DEFAULT_CAMERAS.
            clock: Time source for exposure timing and the thermal model.
                Pass the same clock to open_device() in tests.
        """
        self.config = config or DigitalTwinConfig()
        self._cameras: dict[int, TwinCameraSpec] = (
            dict(cameras) if cameras else dict(DEFAULT_CAMERAS)
        )
        self._clock: Clock = clock or SystemClock()
        self._open: dict[int, TwinSensorBackend] = {}
        logger.info(
            "Digital twin camera driver initialized",
            num_cameras=len(self._cameras),
            seed=self.config.seed,
        )

    def __repr__(self) -> str:
        return f"DigitalTwinCameraDriver(cameras={list(self._cameras.keys())})"

    def list_devices(self) -> list[CameraDescriptor]:
        """Return the simulated cameras (no hardware scanning)."""
        logger.debug("Listing simulated cameras", count=len(self._cameras))
        return [
            CameraDescriptor(camera_id=camera_id, name=spec.name, driver=DRIVER_KIND)
            for camera_id, spec in self._cameras.items()
        ]

    def open(self, camera_id: int) -> TwinSensorBackend:
        """Open a simulated camera.

        Raises:
            InvalidParameterError: If camera_id is not configured.
        """
        if camera_id not in self._cameras:
            logger.error("Camera not found", camera_id=camera_id)
            raise InvalidParameterError(f"Camera {camera_id} not found")
        logger.info("Opening simulated camera", camera_id=camera_id)
        backend = TwinSensorBackend(
            camera_id, self._cameras[camera_id], self.config, self._clock
        )
        self._open[camera_id] = backend
        return backend

    def sensor(self, camera_id: int) -> TwinSensorBackend:
        """The open backend of a camera, for drift and fault injection.

        Raises:
            DeviceNotReadyError: If the camera is not currently open.
        """
        backend = self._open.get(camera_id)
        if backend is None or backend.is_closed:
            raise DeviceNotReadyError(f"Simulated camera {camera_id} is not open")
        return backend


@final
class TwinSensorBackend:
    """Opened simulated camera implementing the SensorBackend protocol.

    All commands are serialized by an internal lock, standing in for the
    single USB bus a real camera sits on.
    """

    __slots__ = (
        "_camera_id",
        "_spec",
        "_config",
        "_clock",
        "_lock",
        "_scene",
        "_rng",
        "_setting",
        "_roi",
        "_format",
        "_flip",
        "_illumination",
        "_fault",
        "_job",
        "_temperature",
        "_thermal_time",
        "_cooler_on",
        "_setpoint",
        "_closed",
    )

    def __init__(
        self,
        camera_id: int,
        spec: TwinCameraSpec,
        config: DigitalTwinConfig,
        clock: Clock,
    ) -> None:
        """Create a twin backend. Use DigitalTwinCameraDriver.open()."""
        self._camera_id = camera_id
        self._spec = spec
        self._config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._scene = _render_scene(spec, config)
        self._rng = np.random.default_rng(
            None if config.seed is None else config.seed + camera_id + 1
        )

        capability = spec.capability()
        self._setting = capability.default_setting()
        self._roi = capability.full_frame_roi()
        self._format = spec.formats[0]
        self._flip = (False, False)
        self._illumination = 1.0
        self._fault = config.fault
        self._job: _ExposureJob | None = None

        self._temperature = config.ambient_temperature
        self._thermal_time = clock.monotonic()
        self._cooler_on = False
        self._setpoint = config.ambient_temperature
        self._closed = False

    def __repr__(self) -> str:
        return f"TwinSensorBackend(camera_id={self._camera_id}, name={self._spec.name!r})"

    @property
    def device_key(self) -> tuple[str, int]:
        return (DRIVER_KIND, self._camera_id)

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def is_closed(self) -> bool:
        return self._closed

    # -------------------------------------------------------------------------
    # Simulation controls
    # -------------------------------------------------------------------------

    def set_illumination(self, factor: float) -> None:
        """Scale scene brightness for subsequent exposures (drift, clouds).

        Raises:
            InvalidParameterError: If factor is negative.
        """
        if factor < 0:
            raise InvalidParameterError(f"Illumination must be >= 0, got {factor}")
        with self._lock:
            self._illumination = float(factor)
        logger.debug("Twin illumination changed", camera_id=self._camera_id, factor=factor)

    def set_fault(self, fault: TwinFault) -> None:
        """Inject a fault mode (TwinFault.NONE clears it)."""
        with self._lock:
            self._fault = fault
        logger.info("Twin fault injected", camera_id=self._camera_id, fault=fault.value)

    # -------------------------------------------------------------------------
    # SensorBackend
    # -------------------------------------------------------------------------

    def _check(self) -> None:
        if self._closed:
            raise DeviceNotReadyError(f"Simulated camera {self._camera_id} is closed")
        if self._fault is TwinFault.HARDWARE_FAULT:
            raise HardwareFaultError(
                f"Simulated camera {self._camera_id} stopped responding"
            )

    def capability(self) -> DeviceCapability:
        with self._lock:
            self._check()
            return self._spec.capability()

    def apply(
        self,
        setting: ExposureSetting,
        roi: ROI,
        pixel_format: PixelFormat,
    ) -> None:
        with self._lock:
            self._check()
            self._setting = setting
            self._roi = roi
            self._format = pixel_format

    def set_flip(self, x: bool, y: bool) -> None:
        with self._lock:
            self._check()
            self._flip = (bool(x), bool(y))

    def begin_exposure(self) -> None:
        with self._lock:
            self._check()
            self._job = _ExposureJob(
                setting=self._setting,
                roi=self._roi,
                pixel_format=self._format,
                illumination=self._illumination,
                started=self._clock.monotonic(),
                flip=self._flip,
            )

    def exposure_state(self) -> ExposureState:
        with self._lock:
            self._check()
            job = self._job
            if job is None:
                return ExposureState.IDLE
            if self._fault is TwinFault.HANG:
                return ExposureState.WORKING
            if self._fault is TwinFault.EXPOSURE_FAILED:
                return ExposureState.FAILED
            elapsed = self._clock.monotonic() - job.started
            if elapsed >= job.setting.duration + self._config.readout_time:
                return ExposureState.SUCCESS
            return ExposureState.WORKING

    def read_out(self) -> bytes:
        with self._lock:
            self._check()
            job = self._job
            if job is None or self.exposure_state() is not ExposureState.SUCCESS:
                raise DeviceNotReadyError("No completed exposure to read out")
            self._job = None
            return self._render(job)

    def cancel(self) -> None:
        with self._lock:
            self._check()
            self._job = None

    def _render(self, job: _ExposureJob) -> bytes:
        """Simulate photon collection and read-out for one exposure."""
        roi = job.roi
        region = self._scene[
            roi.y_offset : roi.y_offset + roi.height,
            roi.x_offset : roi.x_offset + roi.width,
        ]
        expected = region.astype(np.float64) * (job.illumination * job.setting.duration)
        signal = self._rng.poisson(expected).astype(np.float64)
        signal += self._rng.normal(0.0, self._config.read_noise, signal.shape)

        if roi.bin_x > 1 or roi.bin_y > 1:
            signal = signal.reshape(
                roi.binned_height, roi.bin_y, roi.binned_width, roi.bin_x
            ).sum(axis=(1, 3))

        adu = signal * 10 ** (job.setting.gain / _GAIN_DB_STEPS)
        adu += job.setting.offset * _ADU_PER_OFFSET
        if job.pixel_format.bytes_per_channel == 1:
            adu /= _ADU16_PER_ADU8
        adu = np.rint(adu)
        flip_x, flip_y = job.flip
        if flip_x:
            adu = adu[:, ::-1]
        if flip_y:
            adu = adu[::-1, :]
        if job.pixel_format.channels == 3:
            adu = np.repeat(adu[:, :, np.newaxis], 3, axis=2)
        return encode_pixels(adu, job.pixel_format)

    # -------------------------------------------------------------------------
    # Thermal model
    # -------------------------------------------------------------------------

    def _thermal_target(self) -> float:
        if not self._cooler_on:
            return self._config.ambient_temperature
        floor = self._config.ambient_temperature - self._config.cooler_max_delta
        return max(self._setpoint, floor)

    def _advance_thermal(self) -> None:
        now = self._clock.monotonic()
        elapsed = now - self._thermal_time
        self._thermal_time = now
        if elapsed > 0:
            target = self._thermal_target()
            decay = math.exp(-elapsed / self._config.cooler_time_constant)
            self._temperature = target + (self._temperature - target) * decay

    def _require_cooler(self) -> None:
        if not self._spec.has_cooler:
            raise InvalidParameterError(f"{self._spec.name} has no cooler")

    def read_temperature(self) -> float:
        with self._lock:
            self._check()
            self._advance_thermal()
            return round(self._temperature, 1)

    def set_cooler_setpoint(self, celsius: float) -> None:
        with self._lock:
            self._check()
            self._require_cooler()
            self._advance_thermal()
            self._setpoint = float(celsius)

    def set_cooler(self, on: bool) -> None:
        with self._lock:
            self._check()
            self._require_cooler()
            self._advance_thermal()
            self._cooler_on = bool(on)

    def cooler_enabled(self) -> bool:
        with self._lock:
            self._check()
            return self._cooler_on

    def cooler_power(self) -> float:
        with self._lock:
            self._check()
            if not self._cooler_on:
                return 0.0
            self._advance_thermal()
            target = self._thermal_target()
            if self._temperature - target > _COOLER_SETTLE_C:
                return 100.0
            hold = (self._config.ambient_temperature - target) / self._config.cooler_max_delta
            return round(min(max(hold * 100.0, 0.0), 100.0), 1)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Simulated camera already closed", camera_id=self._camera_id)
                return
            self._job = None
            self._closed = True
        logger.info("Closed simulated camera", camera_id=self._camera_id)
