"""Tests for package export integrity.

Verifies that __all__ matches actual exports, so star imports work and
the public API stays intentional.
"""

from __future__ import annotations

import importlib

import pytest

PACKAGES = [
    "cameraunit",
    "cameraunit.data",
    "cameraunit.devices",
    "cameraunit.drivers",
    "cameraunit.drivers.cameras",
    "cameraunit.observability",
    "cameraunit.utils",
]

# Submodules that Python binds on the package once they are imported
SUBMODULES = {
    "cameraunit": {
        "data",
        "devices",
        "drivers",
        "errors",
        "exposure",
        "frame",
        "observability",
        "types",
        "utils",
    },
    "cameraunit.data": {"manifest"},
    "cameraunit.devices": {"handle", "telemetry"},
    "cameraunit.drivers": {"cameras", "config"},
    "cameraunit.drivers.cameras": {"asi", "twin"},
    "cameraunit.observability": {"logging"},
    "cameraunit.utils": {"clock", "image"},
}


@pytest.mark.parametrize("name", PACKAGES)
class TestExports:
    """Verify each package's __all__."""

    def test_all_exports_importable(self, name: str) -> None:
        """Every item in __all__ exists and is not None."""
        module = importlib.import_module(name)
        for export in module.__all__:
            assert getattr(module, export, None) is not None, (
                f"{name}.__all__ lists '{export}' but it is not in the module"
            )

    def test_no_namespace_pollution(self, name: str) -> None:
        """Public names are __all__ items or submodules only.

        The typing helpers the drivers.cameras package needs for its
        Protocols are allowed as well.
        """
        module = importlib.import_module(name)
        allowed = set(module.__all__) | SUBMODULES[name]
        if name == "cameraunit.drivers.cameras":
            allowed |= {
                "Protocol",
                "runtime_checkable",
                "annotations",
                "ROI",
                "CameraDescriptor",
                "DeviceCapability",
                "ExposureSetting",
                "ExposureState",
                "PixelFormat",
            }
        actual = {attr for attr in dir(module) if not attr.startswith("_")}
        unexpected = actual - allowed
        assert not unexpected, f"Unexpected public names in {name}: {unexpected}"

    def test_star_import_works(self, name: str) -> None:
        module = importlib.import_module(name)
        namespace: dict[str, object] = {}
        exec(f"from {name} import *", namespace)  # noqa: S102
        for export in module.__all__:
            assert export in namespace, f"Star import of {name} missing '{export}'"
