"""Shared housekeeping access: temperature and cooler control.

A TelemetryHandle can be duplicated freely and used from any number of
threads. All duplicates share one TelemetryChannel, which serializes
access under a lock and serves each reading from cache for
``poll_interval`` seconds. A reading is therefore never torn, and at most
one poll interval old.

Telemetry shares no state with the DeviceHandle; both reach the same
physical device through its backend, which serializes bus access itself.
Once the DeviceHandle closes, every telemetry call raises
DeviceNotReadyError.

Example:
    handle, telemetry = open_device(driver, 1)
    telemetry.set_cooler_setpoint(-10.0)
    telemetry.set_cooler(True)

    monitor = telemetry.duplicate()
    threading.Thread(target=lambda: print(monitor.current_temperature())).start()
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, NamedTuple, TypeVar, final

from cameraunit.errors import DeviceNotReadyError, InvalidParameterError
from cameraunit.observability import get_logger
from cameraunit.utils.clock import Clock, SystemClock

if TYPE_CHECKING:
    from cameraunit.drivers.cameras import SensorBackend
    from cameraunit.types import DeviceCapability

logger = get_logger(__name__)

__all__ = ["TelemetryChannel", "TelemetryHandle"]

_T = TypeVar("_T")


class _Reading(NamedTuple):
    value: Any
    taken_at: float


@final
class TelemetryChannel:
    """Lock-protected, caching gateway to a backend's housekeeping calls."""

    __slots__ = (
        "_backend",
        "_capability",
        "_clock",
        "_poll_interval",
        "_lock",
        "_cache",
        "_closed",
    )

    def __init__(
        self,
        backend: SensorBackend,
        capability: DeviceCapability,
        *,
        clock: Clock | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        if poll_interval < 0:
            raise InvalidParameterError(f"poll_interval must be >= 0, got {poll_interval}")
        self._backend = backend
        self._capability = capability
        self._clock: Clock = clock or SystemClock()
        self._poll_interval = float(poll_interval)
        self._lock = threading.Lock()
        self._cache: dict[str, _Reading] = {}
        self._closed = False

    @property
    def capability(self) -> DeviceCapability:
        return self._capability

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise DeviceNotReadyError(
                f"{self._capability.name} is closed; telemetry unavailable"
            )

    def read(self, name: str, fetch: Callable[[SensorBackend], _T]) -> _T:
        """Cached reading ``name``, refreshed through ``fetch`` when stale."""
        with self._lock:
            self._check_open()
            now = self._clock.monotonic()
            cached = self._cache.get(name)
            if cached is not None and now - cached.taken_at < self._poll_interval:
                value: _T = cached.value
                return value
            value = fetch(self._backend)
            self._cache[name] = _Reading(value, now)
            return value

    def command(self, apply: Callable[[SensorBackend], None]) -> None:
        """Issue a write and drop every cached reading it may affect."""
        with self._lock:
            self._check_open()
            apply(self._backend)
            self._cache.clear()

    def close(self) -> None:
        """Mark the channel closed. Called when the DeviceHandle closes."""
        with self._lock:
            self._closed = True
            self._cache.clear()


@final
class TelemetryHandle:
    """Shared capability for temperature and cooler control.

    Duplicable (duplicate(), copy.copy and copy.deepcopy all return a
    handle on the same channel) and safe for concurrent use.
    """

    __slots__ = ("_channel",)

    def __init__(self, channel: TelemetryChannel) -> None:
        self._channel = channel

    def __repr__(self) -> str:
        state = "closed" if self._channel.is_closed else "open"
        return f"<TelemetryHandle({self.camera_name}, {state})>"

    def duplicate(self) -> TelemetryHandle:
        """Another handle sharing this one's channel and cache."""
        return TelemetryHandle(self._channel)

    def __copy__(self) -> TelemetryHandle:
        return self.duplicate()

    def __deepcopy__(self, memo: dict[int, Any]) -> TelemetryHandle:
        return self.duplicate()

    def shares_channel_with(self, other: TelemetryHandle) -> bool:
        """True if both handles read through the same channel."""
        return self._channel is other._channel

    # -------------------------------------------------------------------------
    # Static information
    # -------------------------------------------------------------------------

    @property
    def camera_name(self) -> str:
        return self._channel.capability.name

    @property
    def sensor_size(self) -> tuple[int, int]:
        """Full sensor (width, height) in pixels."""
        bounds = self._channel.capability.roi_bounds
        return (bounds.width, bounds.height)

    @property
    def pixel_size_um(self) -> float | None:
        return self._channel.capability.pixel_size_um

    @property
    def has_cooler(self) -> bool:
        return self._channel.capability.has_cooler

    @property
    def is_open(self) -> bool:
        return not self._channel.is_closed

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def current_temperature(self) -> float:
        """Detector temperature in °C.

        Raises:
            DeviceNotReadyError: If the device is closed.
            HardwareFaultError: If the device cannot be read.
        """
        return float(self._channel.read("temperature", lambda b: b.read_temperature()))

    def cooler_power(self) -> float:
        """Cooler drive as a percentage (0 without a cooler)."""
        return float(self._channel.read("cooler_power", lambda b: b.cooler_power()))

    def cooler_enabled(self) -> bool:
        """True if the cooler is switched on."""
        return bool(self._channel.read("cooler_enabled", lambda b: b.cooler_enabled()))

    def _require_cooler(self) -> None:
        if not self.has_cooler:
            raise InvalidParameterError(f"{self.camera_name} has no cooler")

    def set_cooler_setpoint(self, target: float) -> None:
        """Set the cooler target temperature in °C.

        Raises:
            InvalidParameterError: If the device has no cooler or the target
                lies outside its cooler range.
            DeviceNotReadyError: If the device is closed.
        """
        self._require_cooler()
        cooler_range = self._channel.capability.cooler_range
        if cooler_range is not None and not cooler_range.contains(target):
            raise InvalidParameterError(
                f"Cooler setpoint {target} °C outside device range "
                f"[{cooler_range.min}, {cooler_range.max}]"
            )
        self._channel.command(lambda b: b.set_cooler_setpoint(target))
        logger.info("Cooler setpoint changed", camera=self.camera_name, target_c=target)

    def set_cooler(self, on: bool) -> None:
        """Switch the cooler on or off.

        Raises:
            InvalidParameterError: If the device has no cooler.
            DeviceNotReadyError: If the device is closed.
        """
        self._require_cooler()
        self._channel.command(lambda b: b.set_cooler(on))
        logger.info("Cooler switched", camera=self.camera_name, on=on)
