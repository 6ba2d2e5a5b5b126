"""Capture strategies.

One lifecycle contract, several ways to take a photo.

Protocols:
    CaptureStrategy: What the registry, preview manager and HTTP surface
        program against.

Implementations:
    SimulatedCameraStrategy: Synthetic frames, no hardware (tag ``sim``)
    GPhoto2CameraStrategy: DSLR over the gphoto2 CLI (tag ``dslr``)
    WebcamCameraStrategy: OpenCV VideoCapture (tag ``webcam``)

Shared types:
    DeviceState, SettingSpec, CaptureResult, BaseCaptureStrategy
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from boothcam.drivers.cameras.base import (
    BaseCaptureStrategy,
    CaptureResult,
    DeviceState,
    SettingSpec,
)
from boothcam.drivers.cameras.gphoto2 import GPhoto2CameraStrategy
from boothcam.drivers.cameras.simulated import SimulatedCameraStrategy
from boothcam.drivers.cameras.webcam import WebcamCameraStrategy

if TYPE_CHECKING:
    from boothcam.utils.image import Frame


@runtime_checkable
class CaptureStrategy(Protocol):  # pragma: no cover
    """Protocol for a capture device backend.

    Business context: The booth swaps between the simulator, a DSLR and a
    webcam at runtime. Everything above the driver layer codes against
    this protocol, so the active backend can change without the preview
    stream or HTTP handlers knowing which one is running.
    """

    tag: str

    @property
    def state(self) -> DeviceState:
        """Current lifecycle state."""
        ...

    @property
    def settings(self) -> Mapping[str, Any]:
        """Read-only settings the next capture will use."""
        ...

    @property
    def last_error(self) -> BaseException | None: ...

    @property
    def resolution(self) -> tuple[int, int]: ...

    async def initialize(self) -> None:
        """Open the device. Idempotent.

        Raises:
            InitError: Device could not be opened; state stays UNINITIALIZED.
        """
        ...

    async def capture_photo(self) -> CaptureResult:
        """Take one photo and publish it to the output directory.

        Raises:
            NotInitializedError: Device not ready.
            DeviceBusyError: A capture is already running.
            CaptureTimeoutError: Acquisition exceeded the capture timeout.
            CaptureError: Any other failure.

        Example:
            >>> result = await strategy.capture_photo()
            >>> result.path.name
            'dslr_1792418527123.jpg'
        """
        ...

    def preview_frames(self) -> AsyncIterator[Frame]:
        """Infinite, paced iterator of preview frames."""
        ...

    async def grab_preview_frame(self) -> Frame: ...

    async def adjust_settings(self, options: Mapping[str, Any]) -> Mapping[str, Any]:
        """Validate and apply settings atomically.

        Raises:
            SettingsError: Unknown key or invalid value; nothing changes.
        """
        ...

    async def cleanup(self, timeout: float | None = None) -> None:
        """Release the device; always ends CLOSED."""
        ...

    def describe(self) -> dict[str, Any]: ...


__all__ = [
    # Protocol
    "CaptureStrategy",
    # Shared types
    "BaseCaptureStrategy",
    "CaptureResult",
    "DeviceState",
    "SettingSpec",
    # Implementations
    "GPhoto2CameraStrategy",
    "SimulatedCameraStrategy",
    "WebcamCameraStrategy",
]
