"""Pixel buffer decoding and colour conversion.

Turns raw frame buffers into numpy arrays according to their PixelFormat,
and uses OpenCV for the colour operations: RGB to luminance (for exposure
statistics) and Bayer demosaicing.

Example:
    from cameraunit.utils.image import decode_pixels, to_luminance

    pixels = decode_pixels(raw, PixelFormat.MONO16, width=640, height=480)
    luma = to_luminance(pixels, PixelFormat.MONO16)
"""

from __future__ import annotations

from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import cv2
import numpy as np

from cameraunit.errors import InvalidParameterError
from cameraunit.types import PixelFormat

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "sample_dtype",
    "expected_buffer_size",
    "decode_pixels",
    "encode_pixels",
    "to_luminance",
    "demosaic",
]

# OpenCV names Bayer codes after the second row of the mosaic, so an RGGB
# sensor uses COLOR_BayerBG2RGB (alias COLOR_BayerRGGB2RGB in newer builds).
_DEMOSAIC_CODES = MappingProxyType(
    {
        "RGGB": cv2.COLOR_BayerBG2RGB,
        "BGGR": cv2.COLOR_BayerRG2RGB,
        "GRBG": cv2.COLOR_BayerGB2RGB,
        "GBRG": cv2.COLOR_BayerGR2RGB,
    }
)


def sample_dtype(pixel_format: PixelFormat) -> np.dtype[Any]:
    """Little-endian numpy dtype of one sample in a raw buffer."""
    return np.dtype("<u2") if pixel_format.bytes_per_channel == 2 else np.dtype("u1")


def expected_buffer_size(pixel_format: PixelFormat, width: int, height: int) -> int:
    """Byte length of a width x height frame in the given format."""
    return width * height * pixel_format.bytes_per_pixel


def decode_pixels(
    buffer: bytes,
    pixel_format: PixelFormat,
    width: int,
    height: int,
) -> NDArray[Any]:
    """View a raw buffer as a read-only (height, width[, channels]) array.

    Args:
        buffer: Raw sample bytes.
        pixel_format: Layout of the buffer.
        width: Image width in pixels.
        height: Image height in pixels.

    Returns:
        Array sharing memory with ``buffer``; 2-D for single-channel
        formats, 3-D (H, W, 3) for RGB.

    Raises:
        InvalidParameterError: If the buffer length does not match.
    """
    expected = expected_buffer_size(pixel_format, width, height)
    if len(buffer) != expected:
        raise InvalidParameterError(
            f"Buffer holds {len(buffer)} bytes, {pixel_format} {width}x{height} "
            f"needs {expected}"
        )
    array = np.frombuffer(buffer, dtype=sample_dtype(pixel_format))
    if pixel_format.channels == 1:
        return array.reshape(height, width)
    return array.reshape(height, width, pixel_format.channels)


def encode_pixels(array: NDArray[Any], pixel_format: PixelFormat) -> bytes:
    """Serialize an array into the raw buffer layout of ``pixel_format``.

    Values are clipped to the format's representable range.

    Raises:
        InvalidParameterError: If the array shape does not match the
            format's channel count.
    """
    expected_ndim = 2 if pixel_format.channels == 1 else 3
    if array.ndim != expected_ndim or (
        expected_ndim == 3 and array.shape[2] != pixel_format.channels
    ):
        raise InvalidParameterError(
            f"Array of shape {array.shape} does not fit pixel format {pixel_format}"
        )
    clipped = np.clip(array, 0, pixel_format.max_value)
    return clipped.astype(sample_dtype(pixel_format)).tobytes()


def to_luminance(pixels: NDArray[Any], pixel_format: PixelFormat) -> NDArray[Any]:
    """Single-channel intensity image used for exposure statistics.

    Mono and Bayer frames are returned as-is (the raw mosaic is a valid
    intensity sample); RGB frames are converted with cv2.cvtColor.
    """
    if pixel_format.channels == 1:
        return pixels
    native = np.array(pixels, dtype=pixels.dtype.newbyteorder("="), order="C")
    return cv2.cvtColor(native, cv2.COLOR_RGB2GRAY)


def demosaic(pixels: NDArray[Any], pixel_format: PixelFormat) -> NDArray[Any]:
    """Convert a frame to an (H, W, 3) RGB array.

    Bayer mosaics are interpolated by OpenCV, mono frames are replicated
    into three channels and RGB frames are returned unchanged.
    """
    if pixel_format.channels == 3:
        return pixels
    native = np.array(pixels, dtype=pixels.dtype.newbyteorder("="), order="C")
    if pixel_format.bayer_pattern is None:
        return cv2.cvtColor(native, cv2.COLOR_GRAY2RGB)
    return cv2.cvtColor(native, _DEMOSAIC_CODES[pixel_format.bayer_pattern])
