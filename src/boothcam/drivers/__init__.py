"""Capture drivers for the booth camera.

Backends:
- SIMULATED: Synthetic frames for development and tests
- GPHOTO2: Tethered DSLR via the gphoto2 CLI
- WEBCAM: Local webcam via OpenCV

Use drivers.config to pick one:
    from boothcam.drivers import BoothConfig, configure
    factory = configure(BoothConfig(backend="dslr"))
    strategy = factory.create_strategy()
"""

from boothcam.drivers import cameras, config
from boothcam.drivers.cameras import CaptureStrategy
from boothcam.drivers.config import (
    Backend,
    BoothConfig,
    StrategyFactory,
    configure,
    get_factory,
)

__all__ = [
    # Submodules
    "cameras",
    "config",
    # Contract
    "CaptureStrategy",
    # Configuration
    "Backend",
    "BoothConfig",
    "StrategyFactory",
    "get_factory",
    "configure",
]
