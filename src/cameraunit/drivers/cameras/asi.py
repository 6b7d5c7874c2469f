"""ASI Camera Driver - Real Hardware Implementation.

Wraps the zwoasi library to expose ZWO ASI cameras through the
SensorBackend protocol. Only the high-level SDK calls are used: controls,
ROI format, exposure start/status/stop and data transfer.

Types:
    ASICameraProtocol: Protocol for the zwoasi.Camera subset used here
    ASISDKProtocol: Protocol for SDK module operations (enables testing)

Classes:
    ASISensorBackend: Opened camera implementing SensorBackend
    ASICameraDriver: Driver for discovering and opening cameras

Example:
    from cameraunit.drivers.cameras.asi import ASICameraDriver
    from cameraunit.devices import open_device

    driver = ASICameraDriver(library_path="/opt/zwo/lib/libASICamera2.so")
    handle, telemetry = open_device(driver, 0)
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any, Protocol, TypeVar, final, runtime_checkable

import numpy as np
import zwoasi as asi

from cameraunit.errors import (
    CameraError,
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

logger = get_logger(__name__)

__all__ = [
    "ASICameraDriver",
    "ASISensorBackend",
    "ASICameraProtocol",
    "ASISDKProtocol",
    "LIBRARY_ENV_VAR",
]

_T = TypeVar("_T")

# =============================================================================
# Constants
# =============================================================================

DRIVER_KIND = "asi"

#: Environment variable consulted when no SDK library path is given.
LIBRARY_ENV_VAR = "ZWO_ASI_LIB"

_US_PER_SECOND = 1_000_000

# SDK reports ASI_TEMPERATURE in tenths of a degree
_TEMPERATURE_SCALE = 10.0

# ASI ROI format constraints, in binned pixels
_ROI_WIDTH_ALIGN = 8
_ROI_HEIGHT_ALIGN = 2

# Exposure status codes
_EXPOSURE_STATES: Mapping[int, ExposureState] = MappingProxyType(
    {
        asi.ASI_EXP_IDLE: ExposureState.IDLE,
        asi.ASI_EXP_WORKING: ExposureState.WORKING,
        asi.ASI_EXP_SUCCESS: ExposureState.SUCCESS,
        asi.ASI_EXP_FAILED: ExposureState.FAILED,
    }
)

# SDK BayerPattern code to CFA pattern of the top-left 2x2 cell.
# zwoasi names code 3 (GB) ASI_BAYER_RB.
_BAYER_PATTERNS: Mapping[int, str] = MappingProxyType(
    {
        asi.ASI_BAYER_RG: "RGGB",
        asi.ASI_BAYER_BG: "BGGR",
        asi.ASI_BAYER_GR: "GRBG",
        asi.ASI_BAYER_RB: "GBRG",
    }
)

_BAYER_FORMATS: Mapping[tuple[str, int], PixelFormat] = MappingProxyType(
    {
        (fmt.bayer_pattern, fmt.bytes_per_channel): fmt
        for fmt in PixelFormat
        if fmt.bayer_pattern is not None
    }
)

# Control names as reported by get_controls()
_CONTROL_EXPOSURE = "Exposure"
_CONTROL_GAIN = "Gain"
_CONTROL_OFFSET = ("Offset", "Brightness")
_CONTROL_TARGET_TEMP = "TargetTemp"


# =============================================================================
# SDK Protocol for Dependency Injection
# =============================================================================


@runtime_checkable
class ASICameraProtocol(Protocol):  # pragma: no cover
    """Protocol for ASI camera object (enables mocking in tests).

    Matches the subset of zwoasi.Camera interface used by this driver.
    """

    def get_camera_property(self) -> dict[str, Any]:
        """Get camera properties from hardware."""
        ...

    def get_controls(self) -> dict[str, dict[str, Any]]:
        """Get available controls and their ranges."""
        ...

    def set_control_value(self, control_type: int, value: int) -> None:
        """Set a control value."""
        ...

    def get_control_value(self, control_type: int) -> tuple[int, bool]:
        """Get current control value and auto status."""
        ...

    def set_roi(
        self,
        start_x: int | None = None,
        start_y: int | None = None,
        width: int | None = None,
        height: int | None = None,
        bins: int | None = None,
        image_type: int | None = None,
    ) -> None:
        """Set ROI format and start position (binned pixels)."""
        ...

    def start_exposure(self) -> None:
        """Begin exposure."""
        ...

    def get_exposure_status(self) -> int:
        """Get exposure completion status."""
        ...

    def stop_exposure(self) -> None:
        """Stop an in-progress exposure."""
        ...

    def get_data_after_exposure(self) -> bytes | bytearray:
        """Retrieve image data after exposure completes."""
        ...

    def close(self) -> None:
        """Close camera and release resources."""
        ...


@runtime_checkable
class ASISDKProtocol(Protocol):  # pragma: no cover
    """Protocol for ASI SDK operations (enables mocking in tests).

    Example:
        class MockASISDK:
            def init(self, library_path: str | None) -> None:
                pass

            def get_num_cameras(self) -> int:
                return 1

            def list_cameras(self) -> list[str]:
                return ["Mock ASI Camera"]

            def open_camera(self, camera_id: int) -> ASICameraProtocol:
                return MockCamera()

        driver = ASICameraDriver(sdk=MockASISDK())
    """

    def init(self, library_path: str | None) -> None:
        """Initialize SDK with library path (None lets zwoasi search)."""
        ...

    def get_num_cameras(self) -> int:
        """Return number of connected cameras."""
        ...

    def list_cameras(self) -> list[str]:
        """Return list of camera names."""
        ...

    def open_camera(self, camera_id: int) -> ASICameraProtocol:
        """Open camera by ID and return camera object."""
        ...


class _ASISDKWrapper:
    """Adapts the zwoasi module to ASISDKProtocol (Camera() -> open_camera)."""

    def init(self, library_path: str | None) -> None:
        asi.init(library_path)

    def get_num_cameras(self) -> int:
        result: int = asi.get_num_cameras()
        return result

    def list_cameras(self) -> list[str]:
        result: list[str] = asi.list_cameras()
        return result

    def open_camera(self, camera_id: int) -> ASICameraProtocol:
        camera: ASICameraProtocol = asi.Camera(camera_id)
        return camera


# =============================================================================
# Capability translation
# =============================================================================


def _control_range(
    controls: Mapping[str, Mapping[str, Any]],
    names: str | tuple[str, ...],
    scale: float = 1.0,
) -> ValueRange | None:
    for name in (names,) if isinstance(names, str) else names:
        control = controls.get(name)
        if control is not None:
            return ValueRange(control["MinValue"] / scale, control["MaxValue"] / scale)
    return None


def _supported_formats(info: Mapping[str, Any]) -> dict[PixelFormat, int]:
    """Pixel formats the camera reads out, mapped to ASI image types.

    RAW16 comes first (the device default) when available. Colour cameras
    report RAW8/RAW16 as Bayer mosaics and Y8 as mono.
    """
    video_formats = set(info.get("SupportedVideoFormat", [asi.ASI_IMG_RAW8]))
    is_color = bool(info.get("IsColorCam", False))
    pattern = _BAYER_PATTERNS.get(info.get("BayerPattern", asi.ASI_BAYER_RG), "RGGB")

    formats: dict[PixelFormat, int] = {}
    for image_type, depth in ((asi.ASI_IMG_RAW16, 2), (asi.ASI_IMG_RAW8, 1)):
        if image_type not in video_formats:
            continue
        if is_color:
            formats[_BAYER_FORMATS[(pattern, depth)]] = image_type
        else:
            formats[PixelFormat.MONO16 if depth == 2 else PixelFormat.MONO8] = image_type
    if asi.ASI_IMG_RGB24 in video_formats:
        formats[PixelFormat.RGB8] = asi.ASI_IMG_RGB24
    if asi.ASI_IMG_Y8 in video_formats and PixelFormat.MONO8 not in formats:
        formats[PixelFormat.MONO8] = asi.ASI_IMG_Y8
    return formats


def _build_capability(
    info: Mapping[str, Any],
    controls: Mapping[str, Mapping[str, Any]],
    formats: Mapping[PixelFormat, int],
) -> DeviceCapability:
    exposure = _control_range(controls, _CONTROL_EXPOSURE, _US_PER_SECOND)
    gain = _control_range(controls, _CONTROL_GAIN)
    if exposure is None or gain is None:
        raise HardwareFaultError(
            f"{info.get('Name', 'ASI camera')} does not report exposure/gain controls"
        )
    has_cooler = bool(info.get("IsCoolerCam", False))
    bins = tuple(sorted(info.get("SupportedBins") or [1]))
    return DeviceCapability(
        name=info["Name"],
        exposure_range=exposure,
        gain_range=gain,
        offset_range=_control_range(controls, _CONTROL_OFFSET) or ValueRange(0, 0),
        roi_bounds=SensorBounds(
            info["MaxWidth"],
            info["MaxHeight"],
            bins[-1],
        ),
        supported_formats=tuple(formats),
        has_cooler=has_cooler,
        cooler_range=(
            _control_range(controls, _CONTROL_TARGET_TEMP) if has_cooler else None
        ),
        pixel_size_um=info.get("PixelSize"),
        supported_bins=bins,
    )


# =============================================================================
# ASI Sensor Backend
# =============================================================================


@final
class ASISensorBackend:
    """Opened ASI camera implementing the SensorBackend protocol.

    SDK calls are serialized by an internal lock so housekeeping reads from
    telemetry threads never interleave with exposure commands. SDK
    exceptions surface as HardwareFaultError.
    """

    __slots__ = (
        "_camera_id",
        "_camera",
        "_lock",
        "_info",
        "_controls",
        "_formats",
        "_capability",
        "_image_type",
        "_closed",
    )

    def __init__(self, camera_id: int, camera: ASICameraProtocol) -> None:
        """Create backend from an opened camera. Use ASICameraDriver.open().

        Raises:
            HardwareFaultError: If properties or controls cannot be queried.
        """
        self._camera_id = camera_id
        self._camera = camera
        self._lock = threading.RLock()
        self._closed = False
        try:
            self._info = camera.get_camera_property()
            self._controls = camera.get_controls()
        except Exception as e:
            raise HardwareFaultError(
                f"Cannot query ASI camera {camera_id}: {e}"
            ) from e
        self._formats = _supported_formats(self._info)
        self._capability = _build_capability(self._info, self._controls, self._formats)
        self._image_type = next(iter(self._formats.values()))

    def __repr__(self) -> str:
        return f"ASISensorBackend(camera_id={self._camera_id}, name={self.name!r})"

    @property
    def device_key(self) -> tuple[str, int]:
        return (DRIVER_KIND, self._camera_id)

    @property
    def name(self) -> str:
        return self._capability.name

    def _call(self, operation: str, func: Callable[..., _T], *args: Any) -> _T:
        """Run one SDK call under the bus lock, wrapping SDK errors."""
        with self._lock:
            if self._closed:
                raise DeviceNotReadyError(f"ASI camera {self._camera_id} is closed")
            try:
                return func(*args)
            except CameraError:
                raise
            except Exception as e:
                logger.error(
                    "ASI SDK call failed",
                    camera_id=self._camera_id,
                    operation=operation,
                    error=str(e),
                )
                raise HardwareFaultError(
                    f"ASI camera {self._camera_id}: {operation} failed: {e}"
                ) from e

    def capability(self) -> DeviceCapability:
        return self._capability

    def apply(
        self,
        setting: ExposureSetting,
        roi: ROI,
        pixel_format: PixelFormat,
    ) -> None:
        """Program gain, offset, exposure and ROI format.

        Raises:
            InvalidParameterError: For asymmetric or unsupported binning,
                an ROI off the sensor, a binned ROI whose width is not a
                multiple of 8 or height not a multiple of 2 (SDK
                requirement), or an unsupported format.
        """
        if roi.bin_x != roi.bin_y:
            raise InvalidParameterError(
                f"ASI cameras bin symmetrically, got ({roi.bin_x}, {roi.bin_y})"
            )
        self._capability.validate_roi(roi)
        if roi.binned_width % _ROI_WIDTH_ALIGN or roi.binned_height % _ROI_HEIGHT_ALIGN:
            raise InvalidParameterError(
                f"ASI ROI of {roi.binned_width}x{roi.binned_height} binned pixels "
                f"must have width % {_ROI_WIDTH_ALIGN} == 0 and "
                f"height % {_ROI_HEIGHT_ALIGN} == 0"
            )
        image_type = self._formats.get(pixel_format)
        if image_type is None:
            raise InvalidParameterError(f"{self.name} cannot read out {pixel_format}")

        def program() -> None:
            camera = self._camera
            camera.set_control_value(asi.ASI_GAIN, int(setting.gain))
            if self._capability.offset_range != ValueRange(0, 0):
                camera.set_control_value(asi.ASI_OFFSET, int(setting.offset))
            camera.set_control_value(
                asi.ASI_EXPOSURE, max(1, round(setting.duration * _US_PER_SECOND))
            )
            camera.set_roi(
                start_x=roi.x_offset // roi.bin_x,
                start_y=roi.y_offset // roi.bin_y,
                width=roi.binned_width,
                height=roi.binned_height,
                bins=roi.bin_x,
                image_type=image_type,
            )

        self._call("apply settings", program)
        self._image_type = image_type
        logger.debug(
            "ASI settings applied",
            camera_id=self._camera_id,
            exposure_s=setting.duration,
            gain=setting.gain,
            roi=str(roi),
            pixel_format=str(pixel_format),
        )

    def set_flip(self, x: bool, y: bool) -> None:
        """Mirror the read-out horizontally (x) and/or vertically (y).

        The SDK flip value is a bit field: 1 horizontal, 2 vertical.
        """
        self._call(
            "set flip",
            self._camera.set_control_value,
            asi.ASI_FLIP,
            int(bool(x)) | int(bool(y)) << 1,
        )

    def begin_exposure(self) -> None:
        self._call("start exposure", self._camera.start_exposure)

    def exposure_state(self) -> ExposureState:
        status = self._call("exposure status", self._camera.get_exposure_status)
        state = _EXPOSURE_STATES.get(status)
        if state is None:
            raise HardwareFaultError(
                f"ASI camera {self._camera_id} reported unknown exposure status {status}"
            )
        return state

    def read_out(self) -> bytes:
        data = bytes(self._call("read out", self._camera.get_data_after_exposure))
        if self._image_type == asi.ASI_IMG_RGB24:
            # SDK delivers BGR triplets
            pixels = np.frombuffer(data, dtype=np.uint8).reshape(-1, 3)
            data = pixels[:, ::-1].tobytes()
        return data

    def cancel(self) -> None:
        self._call("stop exposure", self._camera.stop_exposure)

    def read_temperature(self) -> float:
        value, _auto = self._call(
            "read temperature", self._camera.get_control_value, asi.ASI_TEMPERATURE
        )
        return value / _TEMPERATURE_SCALE

    def _require_cooler(self) -> None:
        if not self._capability.has_cooler:
            raise InvalidParameterError(f"{self.name} has no cooler")

    def set_cooler_setpoint(self, celsius: float) -> None:
        self._require_cooler()
        self._call(
            "set cooler setpoint",
            self._camera.set_control_value,
            asi.ASI_TARGET_TEMP,
            round(celsius),
        )

    def set_cooler(self, on: bool) -> None:
        self._require_cooler()
        self._call(
            "switch cooler", self._camera.set_control_value, asi.ASI_COOLER_ON, int(on)
        )

    def cooler_enabled(self) -> bool:
        if not self._capability.has_cooler:
            return False
        value, _auto = self._call(
            "read cooler state", self._camera.get_control_value, asi.ASI_COOLER_ON
        )
        return bool(value)

    def cooler_power(self) -> float:
        if not self._capability.has_cooler:
            return 0.0
        value, _auto = self._call(
            "read cooler power",
            self._camera.get_control_value,
            asi.ASI_COOLER_POWER_PERC,
        )
        return float(value)

    def close(self) -> None:
        """Close the camera. Idempotent; SDK errors are logged, not raised."""
        with self._lock:
            if self._closed:
                logger.debug("ASI camera already closed", camera_id=self._camera_id)
                return
            self._closed = True
            try:
                self._camera.close()
                logger.info("Closed ASI camera", camera_id=self._camera_id)
            except Exception as e:
                logger.warning(
                    "Error closing ASI camera", camera_id=self._camera_id, error=str(e)
                )


# =============================================================================
# ASI Camera Driver
# =============================================================================


@final
class ASICameraDriver:
    """ASI Camera Driver for real ZWO hardware.

    The SDK is initialized lazily on first use, so the driver can be
    created while cameras are disconnected.

    Example:
        # Production use
        driver = ASICameraDriver()

        # Testing with mock
        driver = ASICameraDriver(sdk=MockASISDK())
    """

    __slots__ = ("_sdk", "_sdk_initialized", "_library_path")

    kind = DRIVER_KIND

    def __init__(
        self,
        sdk: ASISDKProtocol | None = None,
        library_path: str | None = None,
    ) -> None:
        """Create ASI camera driver.

        Args:
            sdk: SDK implementation. Defaults to the real zwoasi module.
                Injected SDKs are treated as already initialized.
            library_path: Path to libASICamera2. Falls back to the
                ZWO_ASI_LIB environment variable, then to zwoasi's own
                library search.
        """
        self._sdk: ASISDKProtocol = sdk if sdk is not None else _ASISDKWrapper()
        self._sdk_initialized = sdk is not None
        self._library_path = library_path or os.environ.get(LIBRARY_ENV_VAR)

    def __repr__(self) -> str:
        return f"ASICameraDriver(library_path={self._library_path!r})"

    def _ensure_sdk_initialized(self) -> None:
        """Initialize the ASI SDK if not already done.

        Raises:
            HardwareFaultError: If the library cannot be loaded.
        """
        if self._sdk_initialized:
            return
        try:
            self._sdk.init(self._library_path)
        except Exception as e:
            logger.error("Failed to initialize ASI SDK", error=str(e))
            raise HardwareFaultError(f"ASI SDK initialization failed: {e}") from e
        self._sdk_initialized = True
        logger.info("ASI SDK initialized", library_path=self._library_path)

    def list_devices(self) -> list[CameraDescriptor]:
        """Enumerate connected ASI cameras without opening them.

        Raises:
            HardwareFaultError: If the SDK cannot be initialized or queried.
        """
        self._ensure_sdk_initialized()
        try:
            if self._sdk.get_num_cameras() == 0:
                logger.info("No ASI cameras detected")
                return []
            names = self._sdk.list_cameras()
        except Exception as e:
            raise HardwareFaultError(f"ASI camera enumeration failed: {e}") from e

        logger.info("Discovered ASI cameras", count=len(names))
        return [
            CameraDescriptor(camera_id=camera_id, name=name, driver=DRIVER_KIND)
            for camera_id, name in enumerate(names)
        ]

    def open(self, camera_id: int) -> ASISensorBackend:
        """Open an ASI camera.

        Raises:
            InvalidParameterError: If camera_id is negative or no such camera
                is connected.
            HardwareFaultError: If the camera cannot be opened.
        """
        if camera_id < 0:
            raise InvalidParameterError(f"camera_id must be >= 0, got {camera_id}")

        self._ensure_sdk_initialized()
        try:
            count = self._sdk.get_num_cameras()
        except Exception as e:
            raise HardwareFaultError(f"ASI camera enumeration failed: {e}") from e
        if camera_id >= count:
            raise InvalidParameterError(
                f"ASI camera {camera_id} not found ({count} connected)"
            )

        try:
            camera = self._sdk.open_camera(camera_id)
        except Exception as e:
            logger.error("Failed to open ASI camera", camera_id=camera_id, error=str(e))
            raise HardwareFaultError(f"Cannot open ASI camera {camera_id}: {e}") from e

        try:
            backend = ASISensorBackend(camera_id, camera)
        except CameraError:
            camera.close()
            raise
        logger.info("Opened ASI camera", camera_id=camera_id, name=backend.name)
        return backend
