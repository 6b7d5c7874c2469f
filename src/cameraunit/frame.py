"""Captured frames with immutable capture-time metadata.

A Frame exclusively owns its raw pixel buffer (an immutable ``bytes``
object) and records everything needed to interpret and reproduce the
capture: pixel format, ROI, the ExposureSetting used, monotonic and UTC
wall-clock timestamps, detector temperature and custom metadata.

Frames are never mutated. ``with_metadata()`` returns a new Frame sharing
the same buffer.

Example:
    frame = handle.fetch_frame()
    luma = frame.luminance()
    tagged = frame.with_metadata(OBJECT="M42", FILTER="Ha")
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Union

from cameraunit.errors import InvalidParameterError
from cameraunit.types import ROI, ExposureSetting, PixelFormat
from cameraunit.utils.clock import Clock, SystemClock
from cameraunit.utils.image import decode_pixels, demosaic, encode_pixels, to_luminance

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "MetadataValue",
    "CaptureTimestamp",
    "Frame",
    "validate_metadata_item",
]

#: Value types accepted for custom metadata keys.
MetadataValue = Union[str, int, float]


def validate_metadata_item(key: object, value: object) -> None:
    """Check one custom metadata pair.

    Raises:
        InvalidParameterError: If the key is not a non-empty string, the
            value is not a str, int or float, or a float is NaN or infinite.
    """
    if not isinstance(key, str) or not key.strip():
        raise InvalidParameterError(f"Metadata key must be a non-empty string: {key!r}")
    if not isinstance(value, str | int | float):
        raise InvalidParameterError(
            f"Metadata value for {key!r} must be str, int or float, "
            f"got {type(value).__name__}"
        )
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidParameterError(
            f"Metadata value for {key!r} must be finite, got {value}"
        )


@dataclass(frozen=True, slots=True)
class CaptureTimestamp:
    """When an exposure started.

    Attributes:
        monotonic: Clock.monotonic() reading, for intervals between frames.
        wall: Timezone-aware UTC wall-clock time, for the record.
    """

    monotonic: float
    wall: datetime

    def __post_init__(self) -> None:
        if self.wall.tzinfo is None:
            raise InvalidParameterError("Capture wall-clock time must be timezone-aware")

    @classmethod
    def now(cls, clock: Clock | None = None) -> CaptureTimestamp:
        """Timestamp for the current instant."""
        clock = clock or SystemClock()
        return cls(monotonic=clock.monotonic(), wall=clock.wall())


@dataclass(frozen=True, eq=False)
class Frame:
    """A captured image plus immutable capture-time metadata.

    Attributes:
        data: Raw pixel buffer. Invariant: ``len(data) == width * height *
            channels * bytes_per_channel`` with width/height after binning.
        pixel_format: Layout of ``data``.
        roi: Region read out, including binning.
        exposure: ExposureSetting the frame was taken with.
        timestamp: Start of the exposure.
        temperature: Detector temperature at capture in °C (NaN if unknown).
        camera_name: Model name of the camera that produced the frame.
        metadata: Ordered, read-only custom key/value pairs.

    Raises:
        InvalidParameterError: If the buffer size does not match the ROI and
            format, or a metadata pair is invalid.
    """

    data: bytes
    pixel_format: PixelFormat
    roi: ROI
    exposure: ExposureSetting
    timestamp: CaptureTimestamp
    temperature: float = math.nan
    camera_name: str = ""
    metadata: Mapping[str, MetadataValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Take ownership: a caller-held bytearray must not alias the frame
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))

        expected = self.width * self.height * self.pixel_format.bytes_per_pixel
        if len(self.data) != expected:
            raise InvalidParameterError(
                f"Frame buffer holds {len(self.data)} bytes; "
                f"{self.pixel_format} {self.width}x{self.height} needs {expected}"
            )

        items = dict(self.metadata)
        for key, value in items.items():
            validate_metadata_item(key, value)
        object.__setattr__(self, "metadata", MappingProxyType(items))

    @classmethod
    def from_array(
        cls,
        pixels: NDArray[Any],
        pixel_format: PixelFormat,
        exposure: ExposureSetting,
        *,
        roi: ROI | None = None,
        timestamp: CaptureTimestamp | None = None,
        temperature: float = math.nan,
        camera_name: str = "",
        metadata: Mapping[str, MetadataValue] | None = None,
    ) -> Frame:
        """Build a frame from a numpy array.

        Used by simulated backends and tests. Values are clipped to the
        format's range. Without an ROI the frame is treated as an unbinned
        full sensor read-out of the array's size.

        Example:
            >>> pixels = np.full((4, 4), 1000, dtype=np.uint16)
            >>> frame = Frame.from_array(pixels, PixelFormat.MONO16,
            ...                          ExposureSetting(duration=1.0))
            >>> frame.width, frame.height
            (4, 4)
        """
        height, width = pixels.shape[:2]
        return cls(
            data=encode_pixels(pixels, pixel_format),
            pixel_format=pixel_format,
            roi=roi or ROI.full_frame(width, height),
            exposure=exposure,
            timestamp=timestamp or CaptureTimestamp.now(),
            temperature=temperature,
            camera_name=camera_name,
            metadata=metadata or {},
        )

    @property
    def width(self) -> int:
        """Image width in (binned) pixels."""
        return self.roi.binned_width

    @property
    def height(self) -> int:
        """Image height in (binned) pixels."""
        return self.roi.binned_height

    @property
    def channels(self) -> int:
        return self.pixel_format.channels

    @property
    def max_value(self) -> int:
        """Largest representable sample value."""
        return self.pixel_format.max_value

    def pixels(self) -> NDArray[Any]:
        """Read-only array view of the buffer, (H, W) or (H, W, 3)."""
        return decode_pixels(self.data, self.pixel_format, self.width, self.height)

    def luminance(self) -> NDArray[Any]:
        """Single-channel intensity image used for exposure statistics."""
        return to_luminance(self.pixels(), self.pixel_format)

    def to_rgb(self) -> NDArray[Any]:
        """RGB rendering of the frame (Bayer mosaics are demosaiced)."""
        return demosaic(self.pixels(), self.pixel_format)

    def with_metadata(
        self,
        items: Mapping[str, MetadataValue] | Iterable[tuple[str, MetadataValue]] = (),
        **kwargs: MetadataValue,
    ) -> Frame:
        """New Frame with extra metadata appended (later keys win).

        Raises:
            InvalidParameterError: If a pair is invalid.
        """
        merged = dict(self.metadata)
        merged.update(dict(items))
        merged.update(kwargs)
        return replace(self, metadata=merged)

    def __str__(self) -> str:
        lines = [
            f"Frame [{self.timestamp.wall.isoformat()}]:",
            f"\tCamera name: {self.camera_name}",
            f"\tImage Bin: {self.roi.bin_x} x {self.roi.bin_y}",
            f"\tImage Origin: {self.roi.x_offset} x {self.roi.y_offset}",
            f"\tExposure: {self.exposure.duration} s",
            f"\tGain: {self.exposure.gain}, Offset: {self.exposure.offset}",
            f"\tTemperature: {self.temperature} C",
        ]
        if self.metadata:
            lines.append("\tExtended Metadata:")
            lines.extend(f"\t\t{key}: {value}" for key, value in self.metadata.items())
        lines.append(f"Size: {self.width} x {self.height}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"Frame({self.pixel_format}, {self.width}x{self.height}, "
            f"exposure={self.exposure.duration}s, camera={self.camera_name!r})"
        )
