"""Exclusive device handle and capture state machine.

A DeviceHandle is the only object allowed to issue exposure commands to a
camera. Exactly one exists per physical device at a time: open_device()
claims the device in a process-wide registry and close() releases it.
Handles refuse to be copied or pickled, and refuse to run an operation
while another thread is inside one.

State machine:

    IDLE --start_capture()--> EXPOSING
    EXPOSING --(hardware ready)--> READY
    EXPOSING --(hardware failure | deadline passed)--> FAILED
    READY --fetch_frame()--> IDLE (returns the Frame)
    FAILED --fetch_frame()--> IDLE (raises the recorded error)
    EXPOSING | READY | FAILED --abort()--> IDLE

No call blocks without bound. poll_status() is non-blocking; wait() and
capture() poll with the injected Clock until the exposure deadline
(duration + timeout margin) and then mark the capture FAILED with
ExposureTimeoutError.

A HardwareFaultError is terminal: afterwards poll_status() reports FAILED
and every other operation except close() raises the recorded fault. The
caller must close and reopen the device.

Example:
    handle, telemetry = open_device(DigitalTwinCameraDriver(), 1)
    with handle:
        handle.configure(ExposureSetting(duration=2.0, gain=100))
        handle.start_capture()
        while handle.poll_status() is CaptureStatus.EXPOSING:
            do_other_work()
        frame = handle.fetch_frame()
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import TracebackType
from typing import TYPE_CHECKING, Any, NoReturn, TypeVar, final

from cameraunit.devices.telemetry import TelemetryChannel, TelemetryHandle
from cameraunit.errors import (
    CameraError,
    DeviceInUseError,
    DeviceNotReadyError,
    ExposureTimeoutError,
    HardwareFaultError,
    InvalidParameterError,
)
from cameraunit.frame import CaptureTimestamp, Frame
from cameraunit.observability import LogContext, get_logger
from cameraunit.types import (
    ROI,
    CaptureStatus,
    DeviceCapability,
    ExposureSetting,
    ExposureState,
    PixelFormat,
)
from cameraunit.utils.clock import Clock, SystemClock

if TYPE_CHECKING:
    from cameraunit.drivers.cameras import CameraDriver, SensorBackend

logger = get_logger(__name__)

__all__ = [
    "DeviceHandle",
    "open_device",
    "open_first_device",
    "is_device_open",
    "DEFAULT_TIMEOUT_MARGIN",
    "DEFAULT_POLL_INTERVAL",
]

_T = TypeVar("_T")

# =============================================================================
# Constants
# =============================================================================

#: Seconds allowed beyond the exposure duration for read-out and transfer.
DEFAULT_TIMEOUT_MARGIN = 10.0

#: Seconds a telemetry reading is served from cache.
DEFAULT_POLL_INTERVAL = 1.0

# Status polling step in wait() once the exposure should have finished
_WAIT_POLL_INTERVAL = 0.05


# =============================================================================
# Exclusivity registry
# =============================================================================


class _DeviceRegistry:
    """Process-wide set of devices that currently have a DeviceHandle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: set[tuple[str, int]] = set()

    def claim(self, key: tuple[str, int]) -> None:
        with self._lock:
            if key in self._claimed:
                raise DeviceInUseError(
                    f"Camera {key[1]} on driver {key[0]!r} is already open; "
                    "close its DeviceHandle first"
                )
            self._claimed.add(key)

    def release(self, key: tuple[str, int]) -> None:
        with self._lock:
            self._claimed.discard(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._claimed


_registry = _DeviceRegistry()


def is_device_open(driver_kind: str, camera_id: int) -> bool:
    """True if a DeviceHandle currently holds the given camera."""
    return (driver_kind, camera_id) in _registry


# =============================================================================
# Device Handle
# =============================================================================


@final
class DeviceHandle:
    """Exclusive capability to configure and expose one camera.

    Created by open_device(). Confine a handle to one thread; a call made
    while another thread is inside an operation raises DeviceNotReadyError
    instead of interleaving commands.

    Attributes:
        capability: Device limits, queried once at open.
    """

    __slots__ = (
        "_backend",
        "_capability",
        "_clock",
        "_timeout_margin",
        "_guard",
        "_status",
        "_setting",
        "_roi",
        "_format",
        "_flip",
        "_latched",
        "_timestamp",
        "_exposure_end",
        "_deadline",
        "_error",
        "_fault",
        "_closed",
        "_on_close",
    )

    def __init__(
        self,
        backend: SensorBackend,
        capability: DeviceCapability,
        *,
        clock: Clock | None = None,
        timeout_margin: float = DEFAULT_TIMEOUT_MARGIN,
    ) -> None:
        """Wrap an opened backend. Use open_device() instead.

        Programs the device defaults: shortest exposure at minimum gain,
        full-frame unbinned ROI, the first supported pixel format and no
        flip.

        Raises:
            InvalidParameterError: If timeout_margin is negative.
            HardwareFaultError: If the defaults cannot be applied.
        """
        if timeout_margin < 0:
            raise InvalidParameterError(
                f"timeout_margin must be >= 0, got {timeout_margin}"
            )
        self._backend = backend
        self._capability = capability
        self._clock: Clock = clock or SystemClock()
        self._timeout_margin = float(timeout_margin)
        self._guard = threading.RLock()
        self._status = CaptureStatus.IDLE
        self._setting = capability.default_setting()
        self._roi = capability.full_frame_roi()
        self._format = capability.supported_formats[0]
        self._flip = (False, False)
        self._latched: tuple[ExposureSetting, ROI, PixelFormat] | None = None
        self._timestamp: CaptureTimestamp | None = None
        self._exposure_end = 0.0
        self._deadline = 0.0
        self._error: CameraError | None = None
        self._fault: HardwareFaultError | None = None
        self._closed = False
        self._on_close: list[Callable[[], None]] = []

        self._backend_call(backend.apply, self._setting, self._roi, self._format)
        self._backend_call(backend.set_flip, *self._flip)

    # -------------------------------------------------------------------------
    # Ownership
    # -------------------------------------------------------------------------

    def __copy__(self) -> NoReturn:
        raise TypeError("DeviceHandle cannot be copied; it owns the device exclusively")

    def __deepcopy__(self, memo: dict[int, Any]) -> NoReturn:
        raise TypeError("DeviceHandle cannot be copied; it owns the device exclusively")

    def __reduce_ex__(self, protocol: object) -> NoReturn:
        raise TypeError("DeviceHandle cannot be pickled; it owns the device exclusively")

    def __enter__(self) -> DeviceHandle:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else self._status.value
        return f"<DeviceHandle({self._capability.name}, {state})>"

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def capability(self) -> DeviceCapability:
        return self._capability

    @property
    def name(self) -> str:
        return self._capability.name

    @property
    def device_key(self) -> tuple[str, int]:
        """(driver kind, camera id) of the device."""
        return self._backend.device_key

    @property
    def settings(self) -> ExposureSetting:
        """ExposureSetting applied by the last configure()."""
        return self._setting

    @property
    def roi(self) -> ROI:
        return self._roi

    @property
    def pixel_format(self) -> PixelFormat:
        return self._format

    @property
    def flip(self) -> tuple[bool, bool]:
        """(horizontal, vertical) mirroring applied to read-outs."""
        return self._flip

    @property
    def status(self) -> CaptureStatus:
        """Last known status, without querying the device."""
        return self._status

    @property
    def last_error(self) -> CameraError | None:
        """Most recent capture failure, or None."""
        return self._error

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def is_faulted(self) -> bool:
        """True after a HardwareFaultError; only close() remains useful."""
        return self._fault is not None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        """Run one public operation exclusively, on an open, healthy device."""
        if not self._guard.acquire(blocking=False):
            raise DeviceNotReadyError(
                f"{name}() called while another thread is using the DeviceHandle"
            )
        try:
            if self._closed:
                raise DeviceNotReadyError(f"{name}() called on a closed DeviceHandle")
            if self._fault is not None:
                raise self._fault
            with LogContext(camera=self._capability.name):
                yield
        finally:
            self._guard.release()

    def _record_fault(self, error: HardwareFaultError) -> None:
        self._fault = error
        self._error = error
        self._status = CaptureStatus.FAILED
        logger.error(
            "Hardware fault, device handle unusable until reopened",
            camera=self._capability.name,
            error=str(error),
        )

    def _backend_call(self, func: Callable[..., _T], *args: Any) -> _T:
        """Call the backend, turning unexpected failures into a terminal fault."""
        try:
            return func(*args)
        except HardwareFaultError as e:
            self._record_fault(e)
            raise
        except CameraError:
            raise
        except Exception as e:
            fault = HardwareFaultError(f"{self._capability.name}: {e}")
            self._record_fault(fault)
            raise fault from e

    def _fail(self, error: CameraError) -> None:
        self._error = error
        self._status = CaptureStatus.FAILED
        self._latched = None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def configure(
        self,
        setting: ExposureSetting,
        roi: ROI | None = None,
        pixel_format: PixelFormat | None = None,
    ) -> None:
        """Validate and apply exposure settings, and optionally ROI and format.

        Omitted ROI and format keep their current values. Only allowed
        while IDLE: a READY or FAILED result must be fetched or aborted
        first, since reprogramming the ROI changes the size of the pending
        read-out.

        Raises:
            InvalidParameterError: If any value lies outside the device
                capability.
            DeviceNotReadyError: Unless IDLE, or if the handle is closed.
            HardwareFaultError: If the device fails (terminal).
        """
        with self._operation("configure"):
            if self._status is CaptureStatus.EXPOSING:
                raise DeviceNotReadyError("Cannot configure while an exposure is running")
            if self._status is not CaptureStatus.IDLE:
                raise DeviceNotReadyError(
                    f"Cannot configure while a {self._status.value} result is pending; "
                    "fetch_frame() or abort() first"
                )
            roi = roi if roi is not None else self._roi
            pixel_format = pixel_format if pixel_format is not None else self._format

            self._capability.validate_setting(setting)
            self._capability.validate_roi(roi)
            self._capability.validate_format(pixel_format)

            self._backend_call(self._backend.apply, setting, roi, pixel_format)
            self._setting = setting
            self._roi = roi
            self._format = pixel_format
            logger.debug(
                "Device configured",
                exposure_s=setting.duration,
                gain=setting.gain,
                offset=setting.offset,
                roi=str(roi),
                pixel_format=str(pixel_format),
            )

    def set_flip(self, x: bool, y: bool) -> None:
        """Mirror frames horizontally (x) and/or vertically (y).

        Applies from the next start_capture(). Like configure(), only
        allowed while IDLE.

        Raises:
            DeviceNotReadyError: Unless IDLE, or if the handle is closed.
            HardwareFaultError: If the device fails (terminal).
        """
        with self._operation("set_flip"):
            if self._status is not CaptureStatus.IDLE:
                raise DeviceNotReadyError(
                    f"Cannot change flip while {self._status.value}"
                )
            self._backend_call(self._backend.set_flip, x, y)
            self._flip = (bool(x), bool(y))
            logger.debug("Flip set", flip_x=self._flip[0], flip_y=self._flip[1])

    def start_capture(self) -> None:
        """Begin an exposure with the configured settings (IDLE -> EXPOSING).

        Raises:
            DeviceNotReadyError: If not IDLE (fetch or abort a pending result
                first), or if the handle is closed.
            HardwareFaultError: If the device fails (terminal).
        """
        with self._operation("start_capture"):
            if self._status is not CaptureStatus.IDLE:
                raise DeviceNotReadyError(
                    f"Cannot start a capture while {self._status.value}"
                )
            timestamp = CaptureTimestamp.now(self._clock)
            self._backend_call(self._backend.begin_exposure)

            self._latched = (self._setting, self._roi, self._format)
            self._timestamp = timestamp
            self._exposure_end = timestamp.monotonic + self._setting.duration
            self._deadline = self._exposure_end + self._timeout_margin
            self._error = None
            self._status = CaptureStatus.EXPOSING
            logger.debug(
                "Exposure started",
                exposure_s=self._setting.duration,
                deadline_s=round(self._deadline - timestamp.monotonic, 3),
            )

    def poll_status(self) -> CaptureStatus:
        """Non-blocking status query, advancing EXPOSING to READY or FAILED.

        Returns FAILED without raising once the handle has faulted.

        Raises:
            DeviceNotReadyError: If the handle is closed or in use by
                another thread.
        """
        if not self._guard.acquire(blocking=False):
            raise DeviceNotReadyError(
                "poll_status() called while another thread is using the DeviceHandle"
            )
        try:
            if self._closed:
                raise DeviceNotReadyError("poll_status() called on a closed DeviceHandle")
            if self._fault is None and self._status is CaptureStatus.EXPOSING:
                with LogContext(camera=self._capability.name):
                    self._advance()
            return self._status
        finally:
            self._guard.release()

    def _advance(self) -> None:
        """Query the hardware once and apply the resulting transition."""
        try:
            state = self._backend_call(self._backend.exposure_state)
        except HardwareFaultError:
            return

        if state is ExposureState.SUCCESS:
            self._status = CaptureStatus.READY
            logger.debug("Exposure complete")
        elif state is ExposureState.FAILED:
            self._record_fault(
                HardwareFaultError(f"{self._capability.name} reported a failed exposure")
            )
        elif state is ExposureState.IDLE:
            self._record_fault(
                HardwareFaultError(f"{self._capability.name} dropped the exposure")
            )
        elif self._clock.monotonic() > self._deadline:
            expected = self._latched[0].duration if self._latched else 0.0
            error = ExposureTimeoutError(
                f"Exposure did not complete within {expected + self._timeout_margin:.3f}s "
                f"(exposure {expected:.3f}s + margin {self._timeout_margin:.3f}s)"
            )
            logger.warning("Exposure timed out", error=str(error))
            try:
                self._backend.cancel()
            except CameraError as e:
                logger.warning("Cancel after timeout failed", error=str(e))
            self._fail(error)

    def fetch_frame(self) -> Frame:
        """Read out the completed exposure (READY -> IDLE).

        From FAILED, raises the recorded error and returns to IDLE (a
        hardware fault stays terminal).

        Raises:
            DeviceNotReadyError: If IDLE or EXPOSING, or the handle is closed.
            ExposureTimeoutError: If the capture timed out.
            HardwareFaultError: If the capture or read-out failed (terminal).
        """
        with self._operation("fetch_frame"):
            if self._status is CaptureStatus.FAILED:
                error = self._error or DeviceNotReadyError("Capture failed")
                self._status = CaptureStatus.IDLE
                raise error
            if self._status is not CaptureStatus.READY:
                raise DeviceNotReadyError(
                    f"No frame to fetch while {self._status.value}; "
                    "poll_status() must report READY first"
                )

            assert self._latched is not None and self._timestamp is not None
            setting, roi, pixel_format = self._latched
            data = self._backend_call(self._backend.read_out)
            temperature = self._backend_call(self._backend.read_temperature)

            try:
                frame = Frame(
                    data=data,
                    pixel_format=pixel_format,
                    roi=roi,
                    exposure=setting,
                    timestamp=self._timestamp,
                    temperature=temperature,
                    camera_name=self._capability.name,
                )
            except InvalidParameterError as e:
                fault = HardwareFaultError(f"Device returned a malformed frame: {e}")
                self._record_fault(fault)
                raise fault from e

            self._latched = None
            self._status = CaptureStatus.IDLE
            logger.debug(
                "Frame fetched",
                width=frame.width,
                height=frame.height,
                size_bytes=len(data),
                temperature=temperature,
            )
            return frame

    def abort(self) -> None:
        """Cancel an exposure or discard a pending result (-> IDLE).

        No-op when already IDLE.

        Raises:
            DeviceNotReadyError: If the handle is closed.
            HardwareFaultError: If the device fails (terminal).
        """
        with self._operation("abort"):
            if self._status is CaptureStatus.EXPOSING:
                self._backend_call(self._backend.cancel)
                logger.info("Exposure aborted")
            elif self._status is not CaptureStatus.IDLE:
                logger.debug("Pending result discarded", status=self._status.value)
            self._latched = None
            self._status = CaptureStatus.IDLE

    def wait(self, timeout: float | None = None) -> CaptureStatus:
        """Poll until the exposure leaves EXPOSING or ``timeout`` elapses.

        Without a timeout the wait is bounded by the exposure deadline,
        after which the capture becomes FAILED.

        Returns:
            The status after waiting. EXPOSING only if ``timeout`` elapsed
            first.

        Raises:
            DeviceNotReadyError: If the handle is closed or in use.
        """
        start = self._clock.monotonic()
        limit = None if timeout is None else start + max(timeout, 0.0)
        while True:
            status = self.poll_status()
            if status is not CaptureStatus.EXPOSING:
                return status
            now = self._clock.monotonic()
            if limit is not None and now >= limit:
                return status
            step = self._exposure_end - now
            if step <= 0:
                step = _WAIT_POLL_INTERVAL
            if limit is not None:
                step = min(step, limit - now)
            self._clock.sleep(step)

    def capture(self, timeout: float | None = None) -> Frame:
        """Expose and read out one frame with the configured settings.

        Args:
            timeout: Seconds to wait before aborting. Defaults to the
                exposure deadline.

        Raises:
            ExposureTimeoutError: If the exposure does not complete in time.
            HardwareFaultError: If the device fails (terminal).
            DeviceNotReadyError: If a result is pending or the handle is closed.
        """
        with self._operation("capture"):
            self.start_capture()
            status = self.wait(timeout)
            if status is CaptureStatus.EXPOSING:
                self.abort()
                self._error = ExposureTimeoutError(
                    f"Capture not complete after {timeout}s; exposure aborted"
                )
                raise self._error
            return self.fetch_frame()

    def close(self) -> None:
        """Release the device. Idempotent, and allowed after a fault.

        Cancels a running exposure, closes the backend, frees the device for
        the next open_device() and closes telemetry handles sharing it.

        Raises:
            DeviceNotReadyError: If another thread is inside an operation.
        """
        if not self._guard.acquire(blocking=False):
            raise DeviceNotReadyError(
                "close() called while another thread is using the DeviceHandle"
            )
        try:
            if self._closed:
                return
            self._closed = True
            if self._status is CaptureStatus.EXPOSING and self._fault is None:
                try:
                    self._backend.cancel()
                except CameraError as e:
                    logger.warning("Cancel on close failed", error=str(e))
            try:
                self._backend.close()
            finally:
                for callback in self._on_close:
                    callback()
                _registry.release(self._backend.device_key)
                logger.info("Device closed", camera=self._capability.name)
        finally:
            self._guard.release()


def open_device(
    driver: CameraDriver,
    camera_id: int,
    *,
    clock: Clock | None = None,
    timeout_margin: float = DEFAULT_TIMEOUT_MARGIN,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> tuple[DeviceHandle, TelemetryHandle]:
    """Open a camera for exclusive control.

    Args:
        driver: Camera driver to open the device with.
        camera_id: Camera to open.
        clock: Time source for deadlines and telemetry caching.
        timeout_margin: Seconds beyond the exposure duration before a
            capture is declared FAILED.
        poll_interval: Seconds a telemetry reading is served from cache.

    Returns:
        (DeviceHandle, TelemetryHandle). The device handle is the single
        exclusive owner; the telemetry handle may be duplicated and shared.

    Raises:
        DeviceInUseError: If the camera already has an open DeviceHandle.
        InvalidParameterError: If camera_id is unknown or a timing value
            is negative.
        HardwareFaultError: If the camera cannot be opened.
    """
    clock = clock or SystemClock()
    key = (driver.kind, camera_id)
    _registry.claim(key)
    try:
        backend = driver.open(camera_id)
    except BaseException:
        _registry.release(key)
        raise

    try:
        capability = backend.capability()
        handle = DeviceHandle(
            backend, capability, clock=clock, timeout_margin=timeout_margin
        )
        channel = TelemetryChannel(
            backend, capability, clock=clock, poll_interval=poll_interval
        )
    except BaseException:
        try:
            backend.close()
        finally:
            _registry.release(key)
        raise

    handle._on_close.append(channel.close)
    logger.info(
        "Device opened",
        driver=driver.kind,
        camera_id=camera_id,
        camera=capability.name,
    )
    return handle, TelemetryHandle(channel)


def open_first_device(
    driver: CameraDriver,
    *,
    clock: Clock | None = None,
    timeout_margin: float = DEFAULT_TIMEOUT_MARGIN,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> tuple[DeviceHandle, TelemetryHandle]:
    """Open the first discovered camera that is not already held.

    Raises:
        DeviceNotReadyError: If the driver finds no camera, or every camera
            already has a DeviceHandle.
        HardwareFaultError: If discovery or opening fails.
    """
    descriptors = driver.list_devices()
    if not descriptors:
        raise DeviceNotReadyError(f"No cameras found by driver {driver.kind!r}")
    for descriptor in descriptors:
        try:
            return open_device(
                driver,
                descriptor.camera_id,
                clock=clock,
                timeout_margin=timeout_margin,
                poll_interval=poll_interval,
            )
        except DeviceInUseError:
            logger.debug("Camera busy, trying next", camera_id=descriptor.camera_id)
    raise DeviceNotReadyError(
        f"All {len(descriptors)} cameras on driver {driver.kind!r} are in use"
    )
