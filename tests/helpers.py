"""Test helper functions for cameraunit.

Provides protocol compliance checks used by driver and clock tests.

Example:
    from tests.helpers import assert_implements_protocol
    from cameraunit.drivers.cameras import SensorBackend

    def test_backend_implements_protocol(backend):
        assert_implements_protocol(backend, SensorBackend)
"""

from __future__ import annotations

from typing import Any


def assert_implements_protocol(instance: object, protocol: type[Any]) -> None:
    """Assert that an instance implements a runtime-checkable Protocol.

    Business context: Mock SDKs, simulated backends and real drivers must
    all satisfy the same Protocol so DeviceHandle can drive any of them.
    Catching a missing member here is cheaper than a failure mid-capture.

    Args:
        instance: Object to check.
        protocol: Protocol class decorated with @runtime_checkable.

    Raises:
        AssertionError: Listing the protocol members the instance lacks.
    """
    if isinstance(instance, protocol):
        return

    object_attrs = set(dir(object))
    expected = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_")
    }
    missing = sorted(attr for attr in expected if not hasattr(instance, attr))
    missing_str = ", ".join(missing) if missing else "unknown"
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {missing_str}"
    )


def assert_all_implement_protocol(instances: list[Any], protocol: type[Any]) -> None:
    """Assert that every instance in a list implements a Protocol.

    Raises:
        AssertionError: Naming the index of the first non-compliant instance.
    """
    for i, instance in enumerate(instances):
        try:
            assert_implements_protocol(instance, protocol)
        except AssertionError as e:
            raise AssertionError(f"Instance at index {i}: {e}") from e
