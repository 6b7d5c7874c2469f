"""Utility modules for cameraunit.

clock: Clock protocol and SystemClock (injectable time source)
image: Raw buffer decoding and OpenCV colour conversion
"""

from cameraunit.utils.clock import Clock, SystemClock

__all__ = ["Clock", "SystemClock"]
