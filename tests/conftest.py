"""Pytest configuration and fixtures for cameraunit tests.

Provides a manually advanced clock and small simulated cameras so device,
telemetry and optimizer tests run deterministically and fast, without
hardware and without sleeping.
"""

from __future__ import annotations

import io
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest

from cameraunit.devices import DeviceHandle, TelemetryHandle, open_device
from cameraunit.drivers.cameras import (
    DigitalTwinCameraDriver,
    DigitalTwinConfig,
    TwinCameraSpec,
)
from cameraunit.observability import configure_logging, reset_logging
from cameraunit.types import PixelFormat, ValueRange

#: Wall-clock time corresponding to monotonic 0 on a FakeClock.
EPOCH = datetime(2026, 3, 14, 22, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock implementing the Clock protocol.

    sleep() advances time instantly, so waits and timeouts resolve without
    real delay. Every requested sleep is recorded for assertions.
    """

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)

    def wall(self) -> datetime:
        return EPOCH + timedelta(seconds=self.now)

    def advance(self, seconds: float) -> None:
        """Move time forward without recording a sleep."""
        self.now += seconds


#: Small cooled mono detector. 64x48 divides by every bin up to 4.
COOLED_MONO = TwinCameraSpec(
    name="Test Cooled Mono",
    width=64,
    height=48,
    pixel_size_um=3.76,
    formats=(PixelFormat.MONO16, PixelFormat.MONO8),
    max_bin=4,
    exposure_range=ValueRange(1e-3, 100.0),
    gain_range=ValueRange(0, 100),
    offset_range=ValueRange(0, 50),
    has_cooler=True,
    cooler_range=ValueRange(-20.0, 25.0),
)

#: Small uncooled colour detector.
UNCOOLED_COLOR = TwinCameraSpec(
    name="Test Uncooled Color",
    width=32,
    height=24,
    pixel_size_um=2.9,
    formats=(PixelFormat.BAYER_RG16, PixelFormat.RGB8, PixelFormat.MONO8),
    max_bin=2,
    exposure_range=ValueRange(1e-3, 10.0),
    gain_range=ValueRange(0, 300),
    offset_range=ValueRange(0, 0),
)

TEST_CAMERAS = {0: COOLED_MONO, 1: UNCOOLED_COLOR}

#: Twin tuning used throughout: few stars, a 0.5 s read-out.
TEST_TWIN_CONFIG = DigitalTwinConfig(seed=7, star_count=5, readout_time=0.5)


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fresh FakeClock starting at monotonic 1000 s.

    Business context:
    Exposure deadlines, telemetry caching and the twin's thermal model
    all read time through the injected clock. A manual clock makes
    timeouts and cooling curves exact and instant.

    Returns:
        FakeClock: Clock at 1000.0 with no recorded sleeps.
    """
    return FakeClock()


@pytest.fixture
def twin_driver(clock: FakeClock) -> DigitalTwinCameraDriver:
    """Provide a twin driver with the two small test cameras.

    Camera 0 is COOLED_MONO, camera 1 is UNCOOLED_COLOR. The driver shares
    the test clock so exposures complete when the clock is advanced.

    Returns:
        DigitalTwinCameraDriver: Driver over TEST_CAMERAS.
    """
    return DigitalTwinCameraDriver(TEST_TWIN_CONFIG, TEST_CAMERAS, clock=clock)


@pytest.fixture
def opened(
    twin_driver: DigitalTwinCameraDriver, clock: FakeClock
) -> Iterator[tuple[DeviceHandle, TelemetryHandle]]:
    """Open the cooled mono test camera and close it after the test.

    Uses a 2 s timeout margin and a 1 s telemetry poll interval.

    Yields:
        (DeviceHandle, TelemetryHandle) for camera 0.
    """
    handle, telemetry = open_device(
        twin_driver, 0, clock=clock, timeout_margin=2.0, poll_interval=1.0
    )
    yield handle, telemetry
    handle.close()


@pytest.fixture
def handle(opened: tuple[DeviceHandle, TelemetryHandle]) -> DeviceHandle:
    """DeviceHandle of the cooled mono test camera."""
    return opened[0]


@pytest.fixture
def telemetry(opened: tuple[DeviceHandle, TelemetryHandle]) -> TelemetryHandle:
    """TelemetryHandle of the cooled mono test camera."""
    return opened[1]


@pytest.fixture
def log_stream() -> Iterator[io.StringIO]:
    """Route cameraunit logging at DEBUG into a StringIO for inspection.

    Business context:
    The cameraunit root logger does not propagate, so tests read log
    output from a dedicated stream rather than caplog.

    Yields:
        io.StringIO receiving formatted log lines.
    """
    stream = io.StringIO()
    configure_logging(level="DEBUG", stream=stream, force=True)
    yield stream
    reset_logging()
    configure_logging()
