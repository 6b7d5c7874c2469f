"""Frame metadata manifests for external persistence.

A manifest is the complete, correctly-typed key/value record of one frame
that a file writer (FITS, ASDF, a database row) consumes. Writing itself
happens elsewhere; this module only guarantees the contract:

    EXPOSURE      float   exposure duration in seconds
    GAIN          int     raw gain
    OFFSET        int     raw black-level offset
    TEMPERATURE   float   detector temperature in °C (NaN if unknown)
    TIMESTAMP     datetime  exposure start, timezone-aware UTC
    ROI           (x, y, w, h) in unbinned sensor pixels
    BINNING       (bx, by)
    PIXEL_FORMAT  str     PixelFormat label
    CAMERA        str     camera model name

followed by the frame's own metadata and then caller-supplied keys, in
insertion order. Custom values are str, int or float.

Example:
    manifest = build_manifest(frame, {"OBJECT": "M42", "FILTER": "Ha"})
    header = manifest.to_fits_header()
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterator, Mapping
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from astropy.io import fits
from astropy.time import Time

from cameraunit.errors import InvalidParameterError
from cameraunit.frame import Frame, MetadataValue, validate_metadata_item
from cameraunit.observability import get_logger

logger = get_logger(__name__)

__all__ = [
    "MetadataKey",
    "STANDARD_KEYS",
    "RESERVED_CARDS",
    "FrameManifest",
    "ManifestSink",
    "build_manifest",
    "export_frame",
]


class MetadataKey(str, Enum):
    """Standard manifest keys, in manifest order."""

    EXPOSURE = "EXPOSURE"
    GAIN = "GAIN"
    OFFSET = "OFFSET"
    TEMPERATURE = "TEMPERATURE"
    TIMESTAMP = "TIMESTAMP"
    ROI = "ROI"
    BINNING = "BINNING"
    PIXEL_FORMAT = "PIXEL_FORMAT"
    CAMERA = "CAMERA"


STANDARD_KEYS: frozenset[str] = frozenset(key.value for key in MetadataKey)

_FITS_PROGRAM = "cameraunit"
# Plain FITS keywords: up to 8 of A-Z, 0-9, hyphen, underscore
_FITS_KEYWORD = re.compile(r"^[A-Z0-9_-]{1,8}$")

# Cards written from standard keys, plus the structural keywords of a FITS HDU
RESERVED_CARDS: frozenset[str] = frozenset(
    {
        "PROGRAM",
        "INSTRUME",
        "DATE-OBS",
        "EXPTIME",
        "GAIN",
        "OFFSET",
        "CCD-TEMP",
        "XORGSUBF",
        "YORGSUBF",
        "ROIWIDTH",
        "ROIHEIGH",
        "XBINNING",
        "YBINNING",
        "PIXFMT",
        "SIMPLE",
        "XTENSION",
        "BITPIX",
        "NAXIS",
        "EXTEND",
        "BZERO",
        "BSCALE",
        "END",
    }
)
_NAXIS_CARD = re.compile(r"^NAXIS\d+$")


def _fits_card(key: str) -> str:
    """FITS card name a custom key is written under."""
    card = key.upper()
    return card if _FITS_KEYWORD.match(card) else f"HIERARCH {card}"


class FrameManifest(Mapping[str, Any]):
    """Ordered, read-only key/value record of one frame.

    Iteration yields standard keys first (in MetadataKey order), then the
    frame's metadata, then caller keys.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Mapping[str, Any]) -> None:
        self._items: Mapping[str, Any] = MappingProxyType(dict(items))

    def __getitem__(self, key: str) -> Any:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"FrameManifest({dict(self._items)!r})"

    @property
    def custom(self) -> dict[str, MetadataValue]:
        """Non-standard entries, in order."""
        return {k: v for k, v in self._items.items() if k not in STANDARD_KEYS}

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe copy: tuples become lists, TIMESTAMP an ISO 8601 string.

        NaN temperatures become None.
        """
        result: dict[str, Any] = {}
        for key, value in self._items.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, tuple):
                result[key] = list(value)
            elif isinstance(value, float) and math.isnan(value):
                result[key] = None
            else:
                result[key] = value
        return result

    def to_fits_header(self) -> fits.Header:
        """Translate to an astropy FITS header.

        Standard keys map onto the usual cards (EXPTIME, GAIN, OFFSET,
        CCD-TEMP, DATE-OBS, XORGSUBF/YORGSUBF, ROIWIDTH/ROIHEIGH,
        XBINNING/YBINNING, PIXFMT, INSTRUME). Custom keys that are not valid
        eight-character keywords are written as HIERARCH cards. An
        unknown temperature is omitted.

        Raises:
            InvalidParameterError: If two custom keys differ only in case
                and so map to the same card.

        Example:
            >>> header = build_manifest(frame).to_fits_header()
            >>> header["EXPTIME"]
            1.0
        """
        header = fits.Header()
        x, y, width, height = self._items[MetadataKey.ROI.value]
        bin_x, bin_y = self._items[MetadataKey.BINNING.value]
        timestamp: datetime = self._items[MetadataKey.TIMESTAMP.value]

        header["PROGRAM"] = (_FITS_PROGRAM, "Acquisition software")
        header["INSTRUME"] = (self._items[MetadataKey.CAMERA.value], "Camera model")
        header["DATE-OBS"] = (
            Time(timestamp, scale="utc").isot,
            "UTC start of exposure",
        )
        header["EXPTIME"] = (self._items[MetadataKey.EXPOSURE.value], "[s] Exposure time")
        header["GAIN"] = (self._items[MetadataKey.GAIN.value], "Raw gain")
        header["OFFSET"] = (self._items[MetadataKey.OFFSET.value], "Raw black level")
        temperature = self._items[MetadataKey.TEMPERATURE.value]
        if not math.isnan(temperature):
            header["CCD-TEMP"] = (temperature, "[C] Detector temperature")
        header["XORGSUBF"] = (x, "Subframe X origin (unbinned)")
        header["YORGSUBF"] = (y, "Subframe Y origin (unbinned)")
        header["ROIWIDTH"] = (width, "Subframe width (unbinned)")
        header["ROIHEIGH"] = (height, "Subframe height (unbinned)")
        header["XBINNING"] = (bin_x, "Horizontal binning")
        header["YBINNING"] = (bin_y, "Vertical binning")
        header["PIXFMT"] = (self._items[MetadataKey.PIXEL_FORMAT.value], "Pixel format")

        written: dict[str, str] = {}
        for key, value in self.custom.items():
            card = _fits_card(key)
            if card in written:
                raise InvalidParameterError(
                    f"Metadata keys {written[card]!r} and {key!r} both map to "
                    f"FITS card {card}"
                )
            written[card] = key
            header[card] = value
        return header


@runtime_checkable
class ManifestSink(Protocol):  # pragma: no cover
    """Persistence collaborator that accepts a frame and its manifest."""

    def write(self, frame: Frame, manifest: FrameManifest) -> None:
        """Persist a frame. Encoding and storage are the sink's concern."""
        ...


def _standard_entries(frame: Frame) -> dict[str, Any]:
    roi = frame.roi
    return {
        MetadataKey.EXPOSURE.value: float(frame.exposure.duration),
        MetadataKey.GAIN.value: int(frame.exposure.gain),
        MetadataKey.OFFSET.value: int(frame.exposure.offset),
        MetadataKey.TEMPERATURE.value: float(frame.temperature),
        MetadataKey.TIMESTAMP.value: frame.timestamp.wall,
        MetadataKey.ROI.value: (roi.x_offset, roi.y_offset, roi.width, roi.height),
        MetadataKey.BINNING.value: (roi.bin_x, roi.bin_y),
        MetadataKey.PIXEL_FORMAT.value: frame.pixel_format.label,
        MetadataKey.CAMERA.value: frame.camera_name,
    }


def build_manifest(
    frame: Frame,
    custom: Mapping[str, MetadataValue] | None = None,
) -> FrameManifest:
    """Build the manifest of a frame.

    Args:
        frame: Captured frame.
        custom: Caller keys appended after the frame's metadata, in order.
            A caller key may override a frame metadata key of the same name
            but keeps the frame key's position.

    Returns:
        FrameManifest with standard keys first.

    Raises:
        InvalidParameterError: If a frame or caller key shadows a standard
            key or a reserved FITS card, is not a non-empty string, or has
            a value that is not a finite str, int or float.
    """
    items = _standard_entries(frame)
    for source in (frame.metadata, custom or {}):
        for key, value in source.items():
            validate_metadata_item(key, value)
            if key.upper() in STANDARD_KEYS:
                raise InvalidParameterError(
                    f"Custom metadata key {key!r} shadows a standard manifest key"
                )
            card = key.upper()
            if card in RESERVED_CARDS or _NAXIS_CARD.match(card):
                raise InvalidParameterError(
                    f"Custom metadata key {key!r} would overwrite the FITS card {card}"
                )
            items[key] = value
    return FrameManifest(items)


def export_frame(
    frame: Frame,
    sink: ManifestSink,
    custom: Mapping[str, MetadataValue] | None = None,
) -> FrameManifest:
    """Build a frame's manifest and hand both to a sink.

    Returns:
        The manifest passed to the sink.

    Raises:
        InvalidParameterError: If the manifest cannot be built. The sink is
            not called in that case. Sink exceptions propagate unchanged.
    """
    manifest = build_manifest(frame, custom)
    logger.debug(
        "Exporting frame",
        camera=frame.camera_name,
        keys=len(manifest),
        sink=type(sink).__name__,
    )
    sink.write(frame, manifest)
    return manifest
