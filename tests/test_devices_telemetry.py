"""Tests for TelemetryHandle and the shared TelemetryChannel.

Temperatures come from the twin's first-order thermal model: ambient
20 °C, time constant 60 s, readings rounded to 0.1 °C. The `opened`
fixture uses a 1 s telemetry poll interval.
"""

import copy
import threading

import pytest

from cameraunit.devices import is_device_open, open_device
from cameraunit.drivers.cameras import TwinFault
from cameraunit.errors import (
    DeviceNotReadyError,
    HardwareFaultError,
    InvalidParameterError,
)
from cameraunit.types import ExposureSetting


class TestStaticInfo:
    """Tests for capability-derived properties."""

    def test_cooled_camera(self, telemetry):
        assert telemetry.camera_name == "Test Cooled Mono"
        assert telemetry.sensor_size == (64, 48)
        assert telemetry.pixel_size_um == 3.76
        assert telemetry.has_cooler
        assert telemetry.is_open


class TestReadings:
    """Tests for cached housekeeping readings."""

    def test_ambient_at_start(self, telemetry):
        """Verifies a fresh detector reads ambient with the cooler off."""
        assert telemetry.current_temperature() == 20.0
        assert not telemetry.cooler_enabled()
        assert telemetry.cooler_power() == 0.0

    def test_cooling_curve_and_cache(self, telemetry, clock):
        """Verifies readings follow the thermal model and are cached.

        Arrangement:
        1. Setpoint -10 °C, cooler on at t=0.

        Action:
        Reads at t=60, t=60.5 and t=61.1.

        Assertion Strategy:
        - t=60: -10 + 30/e rounds to 1.0.
        - t=60.5: inside the 1 s poll interval, the cached 1.0.
        - t=61.1: refreshed, 0.8.
        """
        telemetry.set_cooler_setpoint(-10.0)
        telemetry.set_cooler(True)

        clock.advance(60.0)
        assert telemetry.current_temperature() == 1.0
        clock.advance(0.5)
        assert telemetry.current_temperature() == 1.0
        clock.advance(0.6)
        assert telemetry.current_temperature() == 0.8

    def test_commands_invalidate_cache(self, telemetry):
        """Verifies a write is visible immediately, without waiting out the cache."""
        assert not telemetry.cooler_enabled()
        telemetry.set_cooler(True)
        assert telemetry.cooler_enabled()

    def test_cooler_power(self, telemetry, clock):
        """Verifies full drive while cooling down, hold power once settled.

        Assertion Strategy:
        - 100 % right after switching on, 30 °C above the setpoint.
        - After an hour, hold power (20 - -10) / 40 = 75 %.
        """
        telemetry.set_cooler_setpoint(-10.0)
        telemetry.set_cooler(True)
        assert telemetry.cooler_power() == 100.0

        clock.advance(3600.0)
        assert telemetry.cooler_power() == 75.0
        assert telemetry.current_temperature() == -10.0

    def test_setpoint_outside_range(self, telemetry):
        """Verifies setpoints outside the cooler range are rejected."""
        with pytest.raises(InvalidParameterError, match="outside device range"):
            telemetry.set_cooler_setpoint(-50.0)

    def test_readable_during_exposure(self, handle, telemetry):
        """Verifies telemetry does not wait on a running exposure."""
        handle.configure(ExposureSetting(30.0))
        handle.start_capture()
        assert telemetry.current_temperature() == 20.0

    def test_hardware_fault_surfaces(self, twin_driver, telemetry, clock):
        """Verifies a device fault reaches telemetry callers."""
        twin_driver.sensor(0).set_fault(TwinFault.HARDWARE_FAULT)
        clock.advance(2.0)
        with pytest.raises(HardwareFaultError):
            telemetry.current_temperature()


class TestUncooledCamera:
    """Tests for cooler calls on a camera without a cooler."""

    def test_cooler_calls(self, twin_driver, clock):
        """Verifies cooler writes fail and cooler reads report off.

        Assertion Strategy:
        - set_cooler_setpoint and set_cooler raise InvalidParameterError.
        - cooler_power() is 0 and cooler_enabled() False.
        """
        handle, telemetry = open_device(twin_driver, 1, clock=clock)
        try:
            assert not telemetry.has_cooler
            with pytest.raises(InvalidParameterError, match="no cooler"):
                telemetry.set_cooler_setpoint(-5.0)
            with pytest.raises(InvalidParameterError, match="no cooler"):
                telemetry.set_cooler(True)
            assert telemetry.cooler_power() == 0.0
            assert not telemetry.cooler_enabled()
        finally:
            handle.close()


class TestSharing:
    """Tests for duplication and concurrent use."""

    def test_duplicates_share_channel(self, telemetry):
        """Verifies duplicate(), copy and deepcopy all share one channel."""
        for other in (
            telemetry.duplicate(),
            copy.copy(telemetry),
            copy.deepcopy(telemetry),
        ):
            assert other is not telemetry
            assert other.shares_channel_with(telemetry)

    def test_duplicate_sees_writes(self, telemetry):
        """Verifies a write through one duplicate is seen by another."""
        monitor = telemetry.duplicate()
        telemetry.set_cooler(True)
        assert monitor.cooler_enabled()

    def test_concurrent_readers(self, telemetry):
        """Verifies many threads can read through duplicates at once.

        Action:
        Eight threads each read the temperature through their own
        duplicate.

        Assertion Strategy:
        Every thread reads the same 20.0 and none raises.
        """
        results: list[float] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def reader(handle):
            try:
                value = handle.current_temperature()
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(value)

        threads = [
            threading.Thread(target=reader, args=(telemetry.duplicate(),))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5.0)

        assert errors == []
        assert results == [20.0] * 8


class TestLifecycle:
    """Tests for telemetry after the DeviceHandle closes."""

    def test_closed_with_device(self, handle, telemetry):
        """Verifies every duplicate fails once the device closes."""
        monitor = telemetry.duplicate()
        handle.close()
        assert not telemetry.is_open
        with pytest.raises(DeviceNotReadyError, match="closed"):
            telemetry.current_temperature()
        with pytest.raises(DeviceNotReadyError, match="closed"):
            monitor.set_cooler(False)

    def test_negative_poll_interval_rejected(self, twin_driver, clock):
        """Verifies an invalid poll interval fails open and releases the device."""
        with pytest.raises(InvalidParameterError, match="poll_interval"):
            open_device(twin_driver, 1, clock=clock, poll_interval=-1.0)
        assert not is_device_open("twin", 1)
