"""Hardware drivers for cameraunit.

Drivers translate the SensorBackend contract into vendor SDK calls, or
simulate a camera in DIGITAL_TWIN mode.
"""

from cameraunit.drivers import cameras, config
from cameraunit.drivers.config import (
    DriverConfig,
    DriverFactory,
    DriverMode,
    configure,
    get_factory,
    use_digital_twin,
    use_hardware,
)

__all__ = [
    "cameras",
    "config",
    "DriverConfig",
    "DriverFactory",
    "DriverMode",
    "configure",
    "get_factory",
    "use_digital_twin",
    "use_hardware",
]
