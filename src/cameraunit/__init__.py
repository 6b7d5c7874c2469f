"""cameraunit - Scientific camera control with adaptive exposure.

Vendor-independent control of photon-counting imaging sensors: an
exclusive DeviceHandle running the capture state machine, a shared
TelemetryHandle for temperature and cooler control, immutable Frames with
capture metadata, an exposure optimizer and a metadata manifest for
external file writers.

Example:
    from cameraunit import (
        DigitalTwinCameraDriver,
        ExposureOptimizer,
        OptimizerConfig,
        open_device,
    )

    handle, telemetry = open_device(DigitalTwinCameraDriver(), 1)
    optimizer = ExposureOptimizer(OptimizerConfig.for_device(handle.capability))
    with handle:
        frame = handle.capture()
        handle.configure(optimizer.next_setting(frame))
"""

from cameraunit.data import (
    FrameManifest,
    ManifestSink,
    MetadataKey,
    build_manifest,
    export_frame,
)
from cameraunit.devices import (
    DeviceHandle,
    TelemetryHandle,
    is_device_open,
    open_device,
    open_first_device,
)
from cameraunit.drivers import DriverConfig, DriverFactory, DriverMode
from cameraunit.drivers.cameras import (
    ASICameraDriver,
    CameraDriver,
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    SensorBackend,
)
from cameraunit.errors import (
    CameraError,
    DeviceInUseError,
    DeviceNotReadyError,
    ExposureTimeoutError,
    HardwareFaultError,
    InsufficientSignalError,
    InvalidParameterError,
)
from cameraunit.exposure import (
    ExposureOptimizer,
    ExposurePlan,
    OptimizerConfig,
    PixelStatistics,
    compute_next,
)
from cameraunit.frame import CaptureTimestamp, Frame
from cameraunit.observability import configure_logging, get_logger
from cameraunit.types import (
    ROI,
    CameraDescriptor,
    CaptureStatus,
    DeviceCapability,
    ExposureSetting,
    PixelFormat,
    SensorBounds,
    ValueRange,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Types
    "ROI",
    "CameraDescriptor",
    "CaptureStatus",
    "DeviceCapability",
    "ExposureSetting",
    "PixelFormat",
    "SensorBounds",
    "ValueRange",
    # Errors
    "CameraError",
    "DeviceInUseError",
    "DeviceNotReadyError",
    "ExposureTimeoutError",
    "HardwareFaultError",
    "InsufficientSignalError",
    "InvalidParameterError",
    # Frames
    "CaptureTimestamp",
    "Frame",
    # Exposure
    "ExposureOptimizer",
    "ExposurePlan",
    "OptimizerConfig",
    "PixelStatistics",
    "compute_next",
    # Metadata
    "FrameManifest",
    "ManifestSink",
    "MetadataKey",
    "build_manifest",
    "export_frame",
    # Devices
    "DeviceHandle",
    "TelemetryHandle",
    "is_device_open",
    "open_device",
    "open_first_device",
    # Drivers
    "ASICameraDriver",
    "CameraDriver",
    "DigitalTwinCameraDriver",
    "DigitalTwinConfig",
    "DriverConfig",
    "DriverFactory",
    "DriverMode",
    "SensorBackend",
    # Observability
    "configure_logging",
    "get_logger",
]
