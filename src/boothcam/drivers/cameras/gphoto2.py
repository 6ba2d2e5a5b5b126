"""gphoto2 DSLR strategy.

Drives a tethered DSLR or mirrorless camera through the ``gphoto2`` command
line tool, one asyncio subprocess per operation:

    open     gphoto2 --auto-detect, then --set-config capturetarget=1
    capture  gphoto2 [--set-config k=v ...] then
             gphoto2 --capture-image-and-download --filename <tmp> --force-overwrite
    preview  gphoto2 --capture-preview --stdout
    close    gphoto2 --reset

The camera can only do one thing at a time, so every command after open runs
under the strategy's I/O lock. Settings changes are not sent when
adjust_settings() is called; the next capture pushes whatever differs from
what the camera last accepted, in a single gphoto2 call.

Cancelling a capture (timeout or cleanup) kills the gphoto2 process and
removes its temporary download.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, final

from boothcam.drivers.cameras.base import (
    BaseCaptureStrategy,
    CaptureResult,
    SettingSpec,
)
from boothcam.errors import CaptureError, InitError
from boothcam.observability import get_logger
from boothcam.utils.image import Frame, decode_frame, frame_from_jpeg, render_frame

logger = get_logger(__name__)

__all__ = [
    "DetectedCamera",
    "GPhoto2CameraStrategy",
    "extract_jpeg",
    "parse_auto_detect",
]

JPEG_SOI = b"\xff\xd8"
JPEG_EOI = b"\xff\xd9"

_PORT_PREFIXES = ("usb:", "ptpip:")

PREVIEW_JPEG_QUALITY = 75

# boothcam setting name -> gphoto2 config entry
_CONFIG_NAMES: Mapping[str, str] = MappingProxyType(
    {
        "iso": "iso",
        "aperture": "aperture",
        "shutter_speed": "shutterspeed",
        "white_balance": "whitebalance",
        "focus_mode": "focusmode",
        "image_quality": "imageformat",
    }
)

_IMAGE_FORMATS: Mapping[str, str] = MappingProxyType(
    {"basic": "JPEG Basic", "normal": "JPEG Normal", "fine": "JPEG Fine"}
)

_WHITE_BALANCE_LABELS: Mapping[str, str] = MappingProxyType(
    {
        "auto": "Automatic",
        "daylight": "Daylight",
        "cloudy": "Cloudy",
        "shade": "Shade",
        "tungsten": "Tungsten",
        "fluorescent": "Fluorescent",
        "flash": "Flash",
    }
)

_SETTINGS: Mapping[str, SettingSpec] = MappingProxyType(
    {
        "iso": SettingSpec(choices=(100, 200, 400, 800, 1600, 3200, 6400)),
        "aperture": SettingSpec(
            choices=(
                "f/1.4", "f/1.8", "f/2", "f/2.8", "f/4", "f/5.6",
                "f/8", "f/11", "f/16", "f/22",
            ),
        ),
        "shutter_speed": SettingSpec(
            choices=(
                "1/15", "1/30", "1/60", "1/125", "1/200",
                "1/250", "1/500", "1/1000", "1/2000",
            ),
        ),
        "white_balance": SettingSpec(choices=tuple(_WHITE_BALANCE_LABELS)),
        "focus_mode": SettingSpec(choices=("auto", "manual")),
        "image_quality": SettingSpec(choices=tuple(_IMAGE_FORMATS)),
    }
)

_DEFAULTS: Mapping[str, Any] = MappingProxyType(
    {
        "iso": 200,
        "aperture": "f/5.6",
        "shutter_speed": "1/125",
        "white_balance": "auto",
        "focus_mode": "auto",
        "image_quality": "fine",
    }
)


# =============================================================================
# Output parsing
# =============================================================================

DetectedCamera = tuple[str, str]
"""(model, port) pair reported by ``gphoto2 --auto-detect``."""


def parse_auto_detect(output: str) -> list[DetectedCamera]:
    """Extract (model, port) pairs from ``gphoto2 --auto-detect`` output.

    Example:
        >>> parse_auto_detect(
        ...     "Model                 Port\\n"
        ...     "-----------------------------\\n"
        ...     "Canon EOS 5D Mark III usb:001,004\\n"
        ... )
        [('Canon EOS 5D Mark III', 'usb:001,004')]
    """
    cameras: list[DetectedCamera] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or not parts[-1].startswith(_PORT_PREFIXES):
            continue
        cameras.append((" ".join(parts[:-1]), parts[-1]))
    return cameras


def extract_jpeg(data: bytes) -> bytes | None:
    """Return the first complete SOI..EOI JPEG in ``data``, or None."""
    start = data.find(JPEG_SOI)
    if start < 0:
        return None
    end = data.find(JPEG_EOI, start + len(JPEG_SOI))
    if end < 0:
        return None
    return data[start : end + len(JPEG_EOI)]


def _config_value(key: str, value: Any) -> str:
    if key == "aperture":
        return str(value).removeprefix("f/")
    if key == "focus_mode":
        return "AF-S" if value == "auto" else "MF"
    if key == "image_quality":
        return _IMAGE_FORMATS[value]
    if key == "white_balance":
        return _WHITE_BALANCE_LABELS[value]
    return str(value)


# =============================================================================
# Strategy
# =============================================================================


@final
class GPhoto2CameraStrategy(BaseCaptureStrategy):
    """Capture strategy for gphoto2-supported cameras.

    Business context: The booth's production camera. Photos are downloaded
    straight from the camera and published unmodified; the live view
    comes from the camera's preview mode.

    Attributes:
        model: Camera model reported by auto-detect, once open.
        port: gphoto2 port in use, once open.
    """

    tag = "dslr"
    extension = "jpg"
    SUPPORTED_SETTINGS = _SETTINGS
    DEFAULT_SETTINGS = _DEFAULTS

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.model: str | None = None
        self.port: str | None = None
        self._applied: dict[str, Any] = {}

    def describe(self) -> dict[str, Any]:
        """Status snapshot including the detected camera."""
        info = super().describe()
        info.update(model=self.model, port=self.port)
        return info

    # -------------------------------------------------------------------------
    # Subprocess
    # -------------------------------------------------------------------------

    async def _run(self, *args: str, use_port: bool = True) -> bytes:
        """Run one gphoto2 command and return its stdout.

        The process is killed if the awaiting task is cancelled.

        Raises:
            CaptureError: If gphoto2 is missing or exits non-zero.
        """
        cmd: list[str] = [self._config.gphoto2_binary, *args]
        if use_port and self.port:
            cmd += ["--port", self.port]

        logger.debug("Running gphoto2", args=list(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise CaptureError(
                f"{self.tag}: cannot run {self._config.gphoto2_binary}: {exc}"
            ) from exc

        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise CaptureError(
                f"{self.tag}: gphoto2 {args[0]} failed "
                f"(exit {process.returncode}): {message}"
            )
        return stdout

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    async def _open(self) -> None:
        output = await self._run("--auto-detect", use_port=False)
        cameras = parse_auto_detect(output.decode(errors="replace"))
        if not cameras:
            raise InitError(f"{self.tag}: no gphoto2 compatible camera detected")

        wanted = self._config.gphoto2_port
        if wanted is None:
            self.model, self.port = cameras[0]
        else:
            models = {port: model for model, port in cameras}
            if wanted not in models:
                raise InitError(
                    f"{self.tag}: no camera on port {wanted} "
                    f"(detected: {sorted(models)})"
                )
            self.model, self.port = models[wanted], wanted
        logger.info("Detected camera", model=self.model, port=self.port)

        self._applied = {}
        try:
            await self._run("--set-config", "capturetarget=1")
        except CaptureError as exc:
            logger.warning("Could not set capture target", error=str(exc))

    async def _close(self) -> None:
        if self.port is None:
            return
        try:
            async with self._io_lock:
                await self._run("--reset")
        finally:
            self.port = None
            self._applied = {}

    async def _push_settings(self, settings: Mapping[str, Any]) -> None:
        """Send settings the camera has not accepted yet."""
        pending = {
            key: value
            for key, value in settings.items()
            if key in _CONFIG_NAMES and self._applied.get(key) != value
        }
        if not pending:
            return

        args: list[str] = []
        for key, value in pending.items():
            entry = f"{_CONFIG_NAMES[key]}={_config_value(key, value)}"
            args += ["--set-config", entry]
        try:
            await self._run(*args)
        except CaptureError as exc:
            raise CaptureError(
                f"{self.tag}: camera rejected settings {pending}: {exc}"
            ) from exc
        self._applied.update(pending)
        logger.debug("Settings pushed to camera", changes=pending)

    async def _capture_to_file(self, settings: Mapping[str, Any]) -> CaptureResult:
        tmp = self._new_temp_path()
        try:
            async with self._io_lock:
                await self._push_settings(settings)
                timestamp = self._now()
                await self._run(
                    "--capture-image-and-download",
                    "--filename",
                    str(tmp),
                    "--force-overwrite",
                )
            if not tmp.exists():
                raise CaptureError(
                    f"{self.tag}: camera reported success but no file was created"
                )
            width, height = await asyncio.to_thread(_image_size, tmp)
        except BaseException:
            self._discard(tmp)
            raise

        self._capture_resolution = (width, height)
        path = self._publish(tmp, timestamp)
        return self._build_result(path, timestamp, (width, height), settings)

    async def _grab_preview(self, settings: Mapping[str, Any], sequence: int) -> Frame:
        async with self._io_lock:
            output = await self._run("--capture-preview", "--stdout")
        jpeg = extract_jpeg(output)
        if jpeg is None:
            raise CaptureError(f"{self.tag}: no JPEG frame in preview output")
        return await asyncio.to_thread(
            self._preview_frame, jpeg, settings, sequence
        )

    def _preview_frame(
        self, jpeg: bytes, settings: Mapping[str, Any], sequence: int
    ) -> Frame:
        frame = frame_from_jpeg(jpeg, sequence=sequence, settings=settings)
        if frame.resolution == self._preview_resolution:
            return frame
        return render_frame(
            frame.decode(),
            (),
            self._preview_resolution,
            quality=PREVIEW_JPEG_QUALITY,
            timestamp=frame.timestamp,
            sequence=sequence,
            settings=settings,
        )


def _image_size(path: Path) -> tuple[int, int]:
    """(width, height) of the image file at ``path``."""
    img = decode_frame(path.read_bytes())
    height, width = img.shape[:2]
    return (width, height)

