"""Core data model for camera control.

This module holds the value types shared by drivers, device handles, the
exposure optimizer and the metadata exporter. Keeping them in one module
avoids circular imports between those layers.

Types defined here:
- PixelFormat: Tagged variant of supported sample layouts
- ValueRange: Inclusive (min, max) pair with clamp/contains helpers
- SensorBounds: Detector geometry and maximum binning
- ROI: Region of interest in unbinned sensor pixels
- ExposureSetting: Duration, gain and black-level offset
- DeviceCapability: Limits queried once when a device is opened
- CaptureStatus: Device state as reported by DeviceHandle.poll_status()
- ExposureState: Raw exposure state reported by a sensor backend
- CameraDescriptor: Discovery result

Example:
    from cameraunit.types import ExposureSetting, ROI

    setting = ExposureSetting(duration=0.5, gain=120)
    roi = ROI(x_offset=0, y_offset=0, width=2048, height=2048, bin_x=2, bin_y=2)
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import NamedTuple

from cameraunit.errors import InvalidParameterError

__all__ = [
    "PixelFormat",
    "ValueRange",
    "SensorBounds",
    "ROI",
    "ExposureSetting",
    "DeviceCapability",
    "CaptureStatus",
    "ExposureState",
    "CameraDescriptor",
]


class PixelFormat(Enum):
    """Sample layout of a raw frame buffer.

    Each member carries its channel count, bytes per channel and, for
    Bayer mosaics, the colour filter pattern of the top-left 2x2 cell.
    16-bit samples are little-endian.
    """

    MONO8 = ("mono8", 1, 1, None)
    MONO16 = ("mono16", 1, 2, None)
    RGB8 = ("rgb8", 3, 1, None)
    RGB16 = ("rgb16", 3, 2, None)
    BAYER_RG8 = ("bayer_rg8", 1, 1, "RGGB")
    BAYER_RG16 = ("bayer_rg16", 1, 2, "RGGB")
    BAYER_BG8 = ("bayer_bg8", 1, 1, "BGGR")
    BAYER_BG16 = ("bayer_bg16", 1, 2, "BGGR")
    BAYER_GR8 = ("bayer_gr8", 1, 1, "GRBG")
    BAYER_GR16 = ("bayer_gr16", 1, 2, "GRBG")
    BAYER_GB8 = ("bayer_gb8", 1, 1, "GBRG")
    BAYER_GB16 = ("bayer_gb16", 1, 2, "GBRG")

    def __init__(
        self,
        label: str,
        channels: int,
        bytes_per_channel: int,
        bayer_pattern: str | None,
    ) -> None:
        self.label = label
        self.channels = channels
        self.bytes_per_channel = bytes_per_channel
        self.bayer_pattern = bayer_pattern

    @property
    def bits_per_channel(self) -> int:
        """Sample width in bits (8 or 16)."""
        return self.bytes_per_channel * 8

    @property
    def max_value(self) -> int:
        """Largest representable sample value (full-well in ADU)."""
        return (1 << self.bits_per_channel) - 1

    @property
    def is_bayer(self) -> bool:
        """True for raw colour-filter-array mosaics."""
        return self.bayer_pattern is not None

    @property
    def bytes_per_pixel(self) -> int:
        """Bytes occupied by one pixel across all channels."""
        return self.channels * self.bytes_per_channel

    @classmethod
    def from_label(cls, label: str) -> PixelFormat:
        """Look up a format by its lowercase label (e.g. 'mono16').

        Raises:
            InvalidParameterError: If the label is unknown.
        """
        for member in cls:
            if member.label == label.lower():
                return member
        raise InvalidParameterError(f"Unknown pixel format: {label!r}")

    def __str__(self) -> str:
        return self.label


class ValueRange(NamedTuple):
    """Inclusive numeric range."""

    min: float
    max: float

    def contains(self, value: float) -> bool:
        """True if min <= value <= max."""
        return self.min <= value <= self.max

    def clamp(self, value: float) -> float:
        """Clamp value into the range."""
        return min(max(value, self.min), self.max)


class SensorBounds(NamedTuple):
    """Detector geometry: full-frame size in pixels and the largest bin."""

    width: int
    height: int
    max_bin: int = 1


@dataclass(frozen=True, slots=True)
class ROI:
    """Region of interest read out from the detector.

    Offsets and sizes are in unbinned sensor pixels. The read-out image is
    ``width // bin_x`` by ``height // bin_y`` pixels.

    Attributes:
        x_offset: Left edge on the sensor.
        y_offset: Top edge on the sensor.
        width: Width on the sensor, a multiple of bin_x.
        height: Height on the sensor, a multiple of bin_y.
        bin_x: Horizontal binning factor.
        bin_y: Vertical binning factor.

    Raises:
        InvalidParameterError: On negative offsets, empty size, bins below 1
            or a bin factor that does not divide the size.
    """

    x_offset: int
    y_offset: int
    width: int
    height: int
    bin_x: int = 1
    bin_y: int = 1

    def __post_init__(self) -> None:
        if self.x_offset < 0 or self.y_offset < 0:
            raise InvalidParameterError(
                f"ROI offsets must be >= 0, got ({self.x_offset}, {self.y_offset})"
            )
        if self.width <= 0 or self.height <= 0:
            raise InvalidParameterError(
                f"ROI size must be positive, got {self.width}x{self.height}"
            )
        if self.bin_x < 1 or self.bin_y < 1:
            raise InvalidParameterError(
                f"Bin factors must be >= 1, got ({self.bin_x}, {self.bin_y})"
            )
        if self.width % self.bin_x or self.height % self.bin_y:
            raise InvalidParameterError(
                f"Bin ({self.bin_x}, {self.bin_y}) does not evenly divide "
                f"ROI size {self.width}x{self.height}"
            )

    @classmethod
    def full_frame(cls, width: int, height: int, bin_x: int = 1, bin_y: int = 1) -> ROI:
        """ROI covering the whole sensor, trimmed to a multiple of the bin."""
        return cls(
            x_offset=0,
            y_offset=0,
            width=width - width % bin_x,
            height=height - height % bin_y,
            bin_x=bin_x,
            bin_y=bin_y,
        )

    @property
    def binned_width(self) -> int:
        """Width of the read-out image in pixels."""
        return self.width // self.bin_x

    @property
    def binned_height(self) -> int:
        """Height of the read-out image in pixels."""
        return self.height // self.bin_y

    def with_binning(self, bin_x: int, bin_y: int) -> ROI:
        """Same sensor area at a different binning.

        The size is trimmed down to the nearest multiple of the new bin.
        """
        return replace(
            self,
            width=self.width - self.width % bin_x,
            height=self.height - self.height % bin_y,
            bin_x=bin_x,
            bin_y=bin_y,
        )

    def validate(self, bounds: SensorBounds) -> None:
        """Check that the ROI lies on the sensor and respects max binning.

        Raises:
            InvalidParameterError: If the ROI extends past the sensor edge or
                a bin factor exceeds ``bounds.max_bin``.
        """
        if self.x_offset + self.width > bounds.width:
            raise InvalidParameterError(
                f"ROI x-extent {self.x_offset}+{self.width} exceeds sensor "
                f"width {bounds.width}"
            )
        if self.y_offset + self.height > bounds.height:
            raise InvalidParameterError(
                f"ROI y-extent {self.y_offset}+{self.height} exceeds sensor "
                f"height {bounds.height}"
            )
        if max(self.bin_x, self.bin_y) > bounds.max_bin:
            raise InvalidParameterError(
                f"Binning ({self.bin_x}, {self.bin_y}) exceeds maximum "
                f"{bounds.max_bin}"
            )

    def __str__(self) -> str:
        return (
            f"ROI: Origin = ({self.x_offset}, {self.y_offset}), "
            f"Image Size = ({self.width} x {self.height}), "
            f"Bin = ({self.bin_x}, {self.bin_y})"
        )


@dataclass(frozen=True, slots=True)
class ExposureSetting:
    """Exposure parameters applied to the detector for one capture.

    Attributes:
        duration: Exposure time in seconds, finite and positive.
        gain: Raw gain value in device units.
        offset: Raw black-level offset in device units.
    """

    duration: float
    gain: int = 0
    offset: int = 0

    def __post_init__(self) -> None:
        if not math.isfinite(self.duration) or self.duration <= 0:
            raise InvalidParameterError(
                f"Exposure duration must be a positive number of seconds, "
                f"got {self.duration}"
            )

    def with_duration(self, duration: float) -> ExposureSetting:
        """Copy of this setting with a new duration."""
        return replace(self, duration=duration)


@dataclass(frozen=True)
class DeviceCapability:
    """Limits of an opened device, queried once and constant thereafter.

    Attributes:
        name: Camera model name.
        exposure_range: Allowed exposure duration in seconds.
        gain_range: Allowed raw gain.
        offset_range: Allowed raw black-level offset.
        roi_bounds: Sensor size and maximum binning.
        supported_formats: Pixel formats the device can read out. The first
            entry is the device default.
        has_cooler: True if the detector has a controllable cooler.
        cooler_range: Allowed cooler setpoints in °C (None without cooler).
        pixel_size_um: Physical pixel pitch in micrometres, if known.
        supported_bins: Bin factors the device accepts, when it supports
            only some factors up to ``roi_bounds.max_bin``. None allows
            every factor up to the maximum.
    """

    name: str
    exposure_range: ValueRange
    gain_range: ValueRange
    roi_bounds: SensorBounds
    supported_formats: tuple[PixelFormat, ...]
    offset_range: ValueRange = field(default_factory=lambda: ValueRange(0, 0))
    has_cooler: bool = False
    cooler_range: ValueRange | None = None
    pixel_size_um: float | None = None
    supported_bins: tuple[int, ...] | None = None

    def __post_init__(self) -> None:
        if not self.supported_formats:
            raise InvalidParameterError(f"{self.name}: no supported pixel formats")
        if self.exposure_range.min <= 0 or (
            self.exposure_range.min > self.exposure_range.max
        ):
            raise InvalidParameterError(
                f"{self.name}: invalid exposure range {self.exposure_range}"
            )

    def validate_setting(self, setting: ExposureSetting) -> None:
        """Check an ExposureSetting against the device limits.

        Raises:
            InvalidParameterError: Naming the first out-of-range field.
        """
        if not self.exposure_range.contains(setting.duration):
            raise InvalidParameterError(
                f"Exposure {setting.duration}s outside device range "
                f"[{self.exposure_range.min}, {self.exposure_range.max}]"
            )
        if not self.gain_range.contains(setting.gain):
            raise InvalidParameterError(
                f"Gain {setting.gain} outside device range "
                f"[{self.gain_range.min}, {self.gain_range.max}]"
            )
        if not self.offset_range.contains(setting.offset):
            raise InvalidParameterError(
                f"Offset {setting.offset} outside device range "
                f"[{self.offset_range.min}, {self.offset_range.max}]"
            )

    def validate_roi(self, roi: ROI) -> None:
        """Check that an ROI fits this device's sensor and binning modes."""
        roi.validate(self.roi_bounds)
        if self.supported_bins is not None:
            for factor in (roi.bin_x, roi.bin_y):
                if factor not in self.supported_bins:
                    raise InvalidParameterError(
                        f"{self.name} does not support bin {factor}; "
                        f"supported: {list(self.supported_bins)}"
                    )

    def validate_format(self, pixel_format: PixelFormat) -> None:
        """Check that the device can read out a pixel format."""
        if pixel_format not in self.supported_formats:
            raise InvalidParameterError(
                f"{self.name} does not support pixel format {pixel_format}; "
                f"supported: {[str(f) for f in self.supported_formats]}"
            )

    def full_frame_roi(self) -> ROI:
        """Unbinned ROI covering the whole sensor."""
        return ROI.full_frame(self.roi_bounds.width, self.roi_bounds.height)

    def default_setting(self) -> ExposureSetting:
        """Shortest allowed exposure at minimum gain and offset."""
        return ExposureSetting(
            duration=self.exposure_range.min,
            gain=int(self.gain_range.min),
            offset=int(self.offset_range.min),
        )


class CaptureStatus(Enum):
    """Capture state reported by DeviceHandle.poll_status()."""

    IDLE = "idle"
    EXPOSING = "exposing"
    READY = "ready"
    FAILED = "failed"


class ExposureState(Enum):
    """Raw exposure state as reported by a sensor backend."""

    IDLE = "idle"
    WORKING = "working"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class CameraDescriptor:
    """A camera found during discovery.

    Attributes:
        camera_id: Identifier accepted by the driver's open().
        name: Camera model name.
        driver: Short driver kind (e.g. 'twin', 'asi').
    """

    camera_id: int
    name: str
    driver: str
