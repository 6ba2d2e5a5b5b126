"""Simulated camera strategy - deterministic synthetic frames, no hardware.

Stands in for the DSLR during development, CI and booth setup. Captures wait
the configured acquisition latency, then render a full-resolution frame whose
pixels reflect the current settings (brightness offset, white-balance tint,
JPEG quality from image_quality, and a settings summary line), stamped with a
timestamp band. Preview frames are rendered at preview resolution with a
background colour derived from the frame sequence, so consecutive frames
differ while every run is reproducible.

On first initialize the strategy writes a baseline asset
(``sim_baseline.jpg``) to the asset directory if it does not exist yet.

Example:
    strategy = SimulatedCameraStrategy(BoothConfig(output_dir=tmp_path))
    await strategy.initialize()
    await strategy.adjust_settings({"iso": 800, "image_quality": "superfine"})
    result = await strategy.capture_photo()
    print(result.path)  # .../sim_1792418527123.jpg
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, final

from boothcam.drivers.cameras.base import (
    BaseCaptureStrategy,
    CaptureResult,
    SettingSpec,
)
from boothcam.errors import InitError
from boothcam.observability import get_logger
from boothcam.utils.image import ColorSpec, Frame, render_frame

logger = get_logger(__name__)

__all__ = [
    "BASELINE_FILENAME",
    "IMAGE_QUALITY_JPEG",
    "SimulatedCameraStrategy",
]

# =============================================================================
# Constants
# =============================================================================

BASELINE_FILENAME = "sim_baseline.jpg"
BASELINE_COLOR: ColorSpec = (100, 150, 200)

#: JPEG quality used for each image_quality setting.
IMAGE_QUALITY_JPEG: Mapping[str, int] = MappingProxyType(
    {"low": 60, "normal": 75, "fine": 90, "superfine": 97}
)

PREVIEW_JPEG_QUALITY = 75

# RGB offsets applied to the capture background per white balance preset.
_WHITE_BALANCE_TINT: Mapping[str, tuple[int, int, int]] = MappingProxyType(
    {
        "auto": (0, 0, 0),
        "daylight": (10, 5, -10),
        "cloudy": (20, 10, -15),
        "shade": (25, 10, -20),
        "tungsten": (-25, 0, 30),
        "fluorescent": (-5, 15, 5),
        "flash": (5, 5, 0),
    }
)

_SETTINGS: Mapping[str, SettingSpec] = MappingProxyType(
    {
        "iso": SettingSpec(
            choices=(100, 200, 400, 800, 1600, 3200, 6400),
            description="Sensor sensitivity",
        ),
        "aperture": SettingSpec(
            choices=("f/1.8", "f/2.8", "f/4", "f/5.6", "f/8", "f/11", "f/16"),
        ),
        "shutter_speed": SettingSpec(
            choices=("1/30", "1/60", "1/125", "1/250", "1/500", "1/1000"),
        ),
        "white_balance": SettingSpec(choices=tuple(_WHITE_BALANCE_TINT)),
        "focus_mode": SettingSpec(choices=("auto", "manual")),
        "image_quality": SettingSpec(choices=tuple(IMAGE_QUALITY_JPEG)),
        "brightness": SettingSpec(
            minimum=-100,
            maximum=100,
            integer=True,
            description="Offset added to every pixel",
        ),
    }
)

_DEFAULTS: Mapping[str, Any] = MappingProxyType(
    {
        "iso": 400,
        "aperture": "f/5.6",
        "shutter_speed": "1/125",
        "white_balance": "auto",
        "focus_mode": "auto",
        "image_quality": "fine",
        "brightness": 0,
    }
)


@final
class SimulatedCameraStrategy(BaseCaptureStrategy):
    """Capture strategy producing synthetic frames.

    Business context: Lets the booth software, the HTTP surface and the
    preview page run end to end on a laptop with no camera attached, and
    gives tests deterministic, inspectable photos.
    """

    tag = "sim"
    extension = "jpg"
    SUPPORTED_SETTINGS = _SETTINGS
    DEFAULT_SETTINGS = _DEFAULTS

    baseline_created: bool = False

    @property
    def baseline_path(self) -> Path:
        """Location of the baseline asset."""
        return self._config.asset_dir / BASELINE_FILENAME

    async def _open(self) -> None:
        """Create the baseline asset if it is missing.

        Raises:
            InitError: If the asset directory or file cannot be written.
        """
        try:
            created = await asyncio.to_thread(self._ensure_baseline)
        except OSError as exc:
            raise InitError(
                f"sim: cannot create baseline asset {self.baseline_path}: {exc}"
            ) from exc
        if created:
            self.baseline_created = True
            logger.info("Baseline asset created", path=str(self.baseline_path))

    def _ensure_baseline(self) -> bool:
        path = self.baseline_path
        if path.exists():
            return False
        path.parent.mkdir(parents=True, exist_ok=True)
        width, height = self._capture_resolution
        frame = render_frame(
            BASELINE_COLOR,
            [
                ("Simulated Camera Image", (width // 3, height // 2)),
                ("For Testing Only", (width // 3, height // 2 + height // 10)),
            ],
            self._capture_resolution,
            quality=self._config.jpeg_quality,
        )
        tmp = path.with_name(f".{path.name}.part")
        tmp.write_bytes(frame.data)
        tmp.replace(path)
        return True

    async def _close(self) -> None:
        # Nothing to release; the baseline asset is kept across runs.
        return None

    async def _capture_to_file(self, settings: Mapping[str, Any]) -> CaptureResult:
        await asyncio.sleep(self._config.capture_latency_s)
        timestamp = self._now()
        frame = await asyncio.to_thread(self._render_capture, settings, timestamp)
        path = await self._write_atomic(frame.data, timestamp)
        return self._build_result(path, timestamp, frame.resolution, settings)

    def _render_capture(
        self, settings: Mapping[str, Any], timestamp: datetime
    ) -> Frame:
        width, height = self._capture_resolution
        summary = (
            f"ISO {settings['iso']}  {settings['aperture']}  "
            f"{settings['shutter_speed']}s  WB {settings['white_balance']}  "
            f"AF {settings['focus_mode']}"
        )
        return render_frame(
            _tinted(BASELINE_COLOR, settings["white_balance"]),
            [
                ("Simulated Camera Image", (width // 20, height // 6)),
                ("For Testing Only", (width // 20, height // 6 + height // 12)),
                (summary, (width // 20, height // 6 + height // 6)),
            ],
            self._capture_resolution,
            band_text=timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            quality=IMAGE_QUALITY_JPEG[settings["image_quality"]],
            brightness=settings["brightness"],
            timestamp=timestamp,
            settings=settings,
        )

    async def _grab_preview(self, settings: Mapping[str, Any], sequence: int) -> Frame:
        return await asyncio.to_thread(
            self._render_preview, settings, sequence, self._now()
        )

    def _render_preview(
        self, settings: Mapping[str, Any], sequence: int, now: datetime
    ) -> Frame:
        width, height = self._preview_resolution
        return render_frame(
            _preview_color(sequence),
            [
                ("Simulated Camera Preview", (width // 20, height // 8)),
                (now.strftime("%H:%M:%S.%f")[:-3], (width // 20, height // 8 * 2)),
            ],
            self._preview_resolution,
            quality=PREVIEW_JPEG_QUALITY,
            brightness=settings["brightness"],
            timestamp=now,
            sequence=sequence,
            settings=settings,
        )


def _tinted(color: ColorSpec, white_balance: str) -> ColorSpec:
    dr, dg, db = _WHITE_BALANCE_TINT[white_balance]
    r, g, b = color
    return (_clamp(r + dr), _clamp(g + dg), _clamp(b + db))


def _preview_color(sequence: int) -> ColorSpec:
    """Bluish background that cycles with the frame sequence."""
    return (
        40 + (sequence * 7) % 60,
        80 + (sequence * 3) % 60,
        160 + (sequence * 5) % 80,
    )


def _clamp(value: int) -> int:
    return max(0, min(255, value))
