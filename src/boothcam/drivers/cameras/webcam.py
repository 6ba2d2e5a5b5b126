"""Webcam strategy backed by OpenCV VideoCapture.

Suits booths built around a USB/UVC camera. OpenCV calls block, so each one
runs in a worker thread and device access is serialized by the I/O lock.
The requested capture resolution is a hint: the camera's native size is read
back at open time and reported as the capture resolution.

Settings map directly onto capture properties:

    brightness  -> CAP_PROP_BRIGHTNESS
    contrast    -> CAP_PROP_CONTRAST
    saturation  -> CAP_PROP_SATURATION
    exposure    -> CAP_PROP_EXPOSURE

Their initial values are read from the device when it opens.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, final

import cv2

from boothcam.drivers.cameras.base import (
    BaseCaptureStrategy,
    CaptureResult,
    SettingSpec,
)
from boothcam.errors import CaptureError, InitError, SettingsError
from boothcam.observability import get_logger
from boothcam.utils.image import Frame, render_frame

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

logger = get_logger(__name__)

__all__ = ["WebcamCameraStrategy"]

PREVIEW_JPEG_QUALITY = 75

_PROPERTIES: Mapping[str, int] = MappingProxyType(
    {
        "brightness": cv2.CAP_PROP_BRIGHTNESS,
        "contrast": cv2.CAP_PROP_CONTRAST,
        "saturation": cv2.CAP_PROP_SATURATION,
        "exposure": cv2.CAP_PROP_EXPOSURE,
    }
)

_SETTINGS: Mapping[str, SettingSpec] = MappingProxyType(
    {
        "brightness": SettingSpec(minimum=0, maximum=255),
        "contrast": SettingSpec(minimum=0, maximum=255),
        "saturation": SettingSpec(minimum=0, maximum=255),
        "exposure": SettingSpec(
            minimum=-13,
            maximum=10000,
            description="Driver-specific; log2 seconds on DirectShow, "
            "100 us units on V4L2",
        ),
    }
)

_DEFAULTS: Mapping[str, Any] = MappingProxyType(
    {"brightness": 128, "contrast": 128, "saturation": 128, "exposure": -6}
)


@final
class WebcamCameraStrategy(BaseCaptureStrategy):
    """Capture strategy for a local webcam.

    Business context: Low-cost booths and kiosks use a webcam instead of a
    DSLR. Stills are stamped with the same timestamp band as the
    simulator's.
    """

    tag = "webcam"
    extension = "jpg"
    SUPPORTED_SETTINGS = _SETTINGS
    DEFAULT_SETTINGS = _DEFAULTS

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._cap: cv2.VideoCapture | None = None

    # -------------------------------------------------------------------------
    # Device access (worker threads)
    # -------------------------------------------------------------------------

    def _open_device(
        self,
    ) -> tuple[cv2.VideoCapture, tuple[int, int], dict[str, float]]:
        index = self._config.webcam_device
        cap = cv2.VideoCapture(index)
        if not cap.isOpened():
            cap.release()
            raise InitError(f"{self.tag}: cannot open video device {index}")

        width, height = self._config.capture_resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        native = (
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)) or width,
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)) or height,
        )
        values = {key: cap.get(prop) for key, prop in _PROPERTIES.items()}
        return cap, native, values

    def _read(self) -> NDArray[np.uint8]:
        if self._cap is None:
            raise CaptureError(f"{self.tag}: device is not open")
        ok, raster = self._cap.read()
        if not ok or raster is None:
            raise CaptureError(f"{self.tag}: failed to read a frame")
        return raster

    def _set_properties(self, changes: Mapping[str, Any]) -> None:
        """Push ``changes`` to the device, all or nothing.

        Properties already written are restored to their previous values
        when a later one is rejected, so the device never runs with part of
        a payload the strategy does not report.
        """
        cap = self._cap
        if cap is None:
            raise CaptureError(f"{self.tag}: device is not open")
        applied: list[tuple[int, float]] = []
        for key, value in changes.items():
            prop = _PROPERTIES[key]
            previous = cap.get(prop)
            if not cap.set(prop, float(value)):
                for done_prop, done_value in reversed(applied):
                    if not cap.set(done_prop, done_value):
                        logger.warning(
                            "Could not restore webcam property",
                            prop=done_prop,
                            value=done_value,
                        )
                raise SettingsError(key, f"{self.tag}: device rejected {key}={value}")
            applied.append((prop, previous))

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    async def _open(self) -> None:
        cap, native, values = await asyncio.to_thread(self._open_device)
        self._cap = cap
        self._capture_resolution = native

        readback = {
            key: value
            for key, value in values.items()
            if _SETTINGS[key].minimum <= value <= _SETTINGS[key].maximum
        }
        self._settings = MappingProxyType({**self._settings, **readback})
        logger.info(
            "Webcam opened",
            device=self._config.webcam_device,
            native_resolution=list(native),
        )

    async def _close(self) -> None:
        cap, self._cap = self._cap, None
        if cap is not None:
            await asyncio.to_thread(cap.release)

    async def _apply_settings(self, changes: Mapping[str, Any]) -> None:
        async with self._io_lock:
            await asyncio.to_thread(self._set_properties, changes)

    async def _capture_to_file(self, settings: Mapping[str, Any]) -> CaptureResult:
        async with self._io_lock:
            raster = await asyncio.to_thread(self._read)
        timestamp = self._now()
        height, width = raster.shape[:2]
        frame = await asyncio.to_thread(
            render_frame,
            raster,
            (),
            (width, height),
            band_text=timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            quality=self._config.jpeg_quality,
            timestamp=timestamp,
            settings=settings,
        )
        path = await self._write_atomic(frame.data, timestamp)
        return self._build_result(path, timestamp, frame.resolution, settings)

    async def _grab_preview(self, settings: Mapping[str, Any], sequence: int) -> Frame:
        async with self._io_lock:
            raster = await asyncio.to_thread(self._read)
        return await asyncio.to_thread(
            render_frame,
            raster,
            (),
            self._preview_resolution,
            quality=PREVIEW_JPEG_QUALITY,
            sequence=sequence,
            settings=settings,
        )
