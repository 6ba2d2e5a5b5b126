"""Device layer - the active capture strategy and its live preview."""

from boothcam.devices.preview import (
    DEFAULT_MAX_PENDING,
    PreviewState,
    PreviewStreamManager,
    PreviewSubscription,
)
from boothcam.devices.registry import (
    DeviceRegistry,
    get_registry,
    init_registry,
    shutdown_registry,
)

__all__ = [
    # Preview
    "DEFAULT_MAX_PENDING",
    "PreviewState",
    "PreviewStreamManager",
    "PreviewSubscription",
    # Registry
    "DeviceRegistry",
    "init_registry",
    "get_registry",
    "shutdown_registry",
]
