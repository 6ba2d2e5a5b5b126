"""Frame codec: synthesize, stamp, encode and decode JPEG frames.

Every capture and every preview tick goes through ``render_frame``. It builds
a BGR raster of the requested resolution, burns text overlays and an optional
timestamp band into it, and returns an immutable ``Frame`` holding the JPEG
bytes. Resolution is always a parameter so hardware backends can report their
native size at initialize time.

Encoding or decoding failures raise EncodingError; callers never receive a
partially encoded buffer.

Example:
    from boothcam.utils.image import render_frame, CAPTURE_RESOLUTION

    frame = render_frame(
        (100, 150, 200),
        [("Mock Camera Image", (40, 80))],
        CAPTURE_RESOLUTION,
        band_text="2026-10-19 18:42:07",
    )
    frame.width, frame.height  # (1920, 1080)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import cv2
import numpy as np

from boothcam.errors import EncodingError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "CAPTURE_RESOLUTION",
    "PREVIEW_RESOLUTION",
    "DEFAULT_JPEG_QUALITY",
    "ColorSpec",
    "Overlay",
    "Frame",
    "render_frame",
    "encode_image",
    "decode_frame",
    "frame_from_jpeg",
]

# =============================================================================
# Constants
# =============================================================================

#: Full-resolution still size (width, height).
CAPTURE_RESOLUTION: tuple[int, int] = (1920, 1080)

#: Live preview size (width, height).
PREVIEW_RESOLUTION: tuple[int, int] = (640, 480)

DEFAULT_JPEG_QUALITY = 90

#: RGB triple, each channel 0-255.
ColorSpec = tuple[int, int, int]

#: Text and its (x, y) baseline position in pixels.
Overlay = tuple[str, tuple[int, int]]

_FONT = cv2.FONT_HERSHEY_SIMPLEX
_TEXT_COLOR = (255, 255, 255)

# Band geometry relative to frame height; 1080 rows gives a 98 px band.
_BAND_HEIGHT_RATIO = 11
_BAND_MIN_HEIGHT = 24
_BAND_ALPHA = 0.5

_EMPTY_SETTINGS: Mapping[str, Any] = MappingProxyType({})


# =============================================================================
# Frame
# =============================================================================


@dataclass(frozen=True, slots=True)
class Frame:
    """Immutable encoded image plus the metadata it was rendered with.

    Attributes:
        width: Raster width in pixels.
        height: Raster height in pixels.
        channels: Channel count of the raster (3 for BGR).
        data: JPEG bytes, starting with the SOI marker ``FF D8``.
        timestamp: UTC time the frame was produced.
        sequence: Position in the stream that produced it (0 for stills).
        settings: Read-only snapshot of the device settings in effect.
    """

    width: int
    height: int
    channels: int
    data: bytes
    timestamp: datetime
    sequence: int = 0
    settings: Mapping[str, Any] = field(default_factory=lambda: _EMPTY_SETTINGS)

    @property
    def size_bytes(self) -> int:
        """Encoded size."""
        return len(self.data)

    @property
    def resolution(self) -> tuple[int, int]:
        """(width, height)."""
        return (self.width, self.height)

    def decode(self) -> NDArray[np.uint8]:
        """Decode the JPEG payload back to a BGR raster."""
        return decode_frame(self.data)


# =============================================================================
# Rendering
# =============================================================================


def render_frame(
    background: ColorSpec | NDArray[Any],
    overlays: Sequence[Overlay] = (),
    resolution: tuple[int, int] = PREVIEW_RESOLUTION,
    *,
    band_text: str | None = None,
    quality: int = DEFAULT_JPEG_QUALITY,
    brightness: int = 0,
    timestamp: datetime | None = None,
    sequence: int = 0,
    settings: Mapping[str, Any] | None = None,
) -> Frame:
    """Render a raster with text overlays and encode it as a JPEG Frame.

    Builds the background (solid RGB colour, or an existing image resized to
    ``resolution``), applies the brightness offset, draws each overlay in
    white, optionally darkens a band across the bottom and centres
    ``band_text`` inside it, then encodes.

    Business context: The simulator renders every still and preview frame
    here, and the timestamp band is the booth's proof-of-time on each
    printed photo. Hardware backends use the same band for their stills.

    Args:
        background: RGB tuple, or a BGR/grayscale ndarray.
        overlays: (text, (x, y)) pairs; positions are text baselines.
        resolution: Output (width, height). Both must be positive.
        band_text: Text centred in the semi-transparent bottom band.
            None draws no band.
        quality: JPEG quality 1-100.
        brightness: Offset added to every background pixel, clipped to
            0-255. Text colour is not affected.
        timestamp: Frame timestamp. Defaults to now (UTC).
        sequence: Stream position recorded on the Frame.
        settings: Settings snapshot recorded on the Frame.

    Returns:
        Frame with ``width``/``height`` equal to ``resolution``.

    Raises:
        ValueError: If resolution, colour or quality are invalid.
        EncodingError: If drawing or JPEG encoding fails.

    Example:
        >>> frame = render_frame((0, 0, 0), [("hello", (10, 40))], (320, 240))
        >>> frame.data[:2]
        b'\\xff\\xd8'
    """
    width, height = _validate_resolution(resolution)
    img = _background_raster(background, width, height)

    if brightness:
        img = np.clip(img.astype(np.int16) + int(brightness), 0, 255).astype(
            np.uint8
        )

    scale, thickness = _text_metrics(height)
    try:
        for text, position in overlays:
            cv2.putText(
                img, text, position, _FONT, scale, _TEXT_COLOR, thickness, cv2.LINE_AA
            )
        if band_text is not None:
            _draw_band(img, band_text, scale, thickness)
    except cv2.error as exc:
        raise EncodingError(f"Failed to draw overlays: {exc}") from exc

    data = encode_image(img, quality)
    return Frame(
        width=width,
        height=height,
        channels=img.shape[2],
        data=data,
        timestamp=timestamp or datetime.now(UTC),
        sequence=sequence,
        settings=MappingProxyType(dict(settings)) if settings else _EMPTY_SETTINGS,
    )


def _validate_resolution(resolution: tuple[int, int]) -> tuple[int, int]:
    width, height = (int(v) for v in resolution)
    if width <= 0 or height <= 0:
        raise ValueError(f"resolution must be positive, got {resolution!r}")
    return width, height


def _background_raster(
    background: ColorSpec | NDArray[Any], width: int, height: int
) -> NDArray[np.uint8]:
    """Build a (height, width, 3) uint8 BGR raster from a colour or image."""
    if isinstance(background, np.ndarray):
        img = background
        if img.ndim == 2:
            img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
        if img.shape[:2] != (height, width):
            img = cv2.resize(img, (width, height), interpolation=cv2.INTER_AREA)
        return np.array(img, dtype=np.uint8, order="C", copy=True)

    if len(background) != 3 or not all(0 <= int(c) <= 255 for c in background):
        raise ValueError(f"background must be an RGB triple 0-255, got {background!r}")
    r, g, b = (int(c) for c in background)
    img = np.empty((height, width, 3), dtype=np.uint8)
    img[:] = (b, g, r)
    return img


def _text_metrics(height: int) -> tuple[float, int]:
    """Font scale and stroke for a raster height (1.0 / 2 at 720 rows)."""
    scale = max(0.4, height / 720)
    return scale, max(1, round(scale * 2))


def _draw_band(
    img: NDArray[np.uint8], text: str, scale: float, thickness: int
) -> None:
    height, width = img.shape[:2]
    band_height = min(height, max(_BAND_MIN_HEIGHT, height // _BAND_HEIGHT_RATIO))
    top = height - band_height

    band = img[top:height]
    band[:] = (band * (1.0 - _BAND_ALPHA)).astype(np.uint8)

    (text_w, text_h), _ = cv2.getTextSize(text, _FONT, scale, thickness)
    x = max(0, (width - text_w) // 2)
    y = top + (band_height + text_h) // 2
    cv2.putText(img, text, (x, y), _FONT, scale, _TEXT_COLOR, thickness, cv2.LINE_AA)


# =============================================================================
# Encoding / decoding
# =============================================================================


def encode_image(img: NDArray[Any], quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    """Encode a raster as JPEG bytes.

    Args:
        img: Grayscale or BGR uint8 array.
        quality: JPEG quality 1-100.

    Returns:
        JPEG bytes starting with ``FF D8``.

    Raises:
        ValueError: If quality is outside 1-100.
        EncodingError: If OpenCV rejects the image or reports failure.
    """
    if not 1 <= quality <= 100:
        raise ValueError(f"quality must be 1-100, got {quality}")
    try:
        ok, buf = cv2.imencode(".jpg", img, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    except cv2.error as exc:
        raise EncodingError(f"JPEG encoding failed: {exc}") from exc
    if not ok:
        raise EncodingError(
            f"JPEG encoding failed for image shape={getattr(img, 'shape', None)}"
        )
    return buf.tobytes()


def decode_frame(data: bytes) -> NDArray[np.uint8]:
    """Decode JPEG (or any OpenCV-readable) bytes to a BGR raster.

    Raises:
        EncodingError: If the bytes are empty or not a decodable image.
    """
    if not data:
        raise EncodingError("Cannot decode empty image data")
    try:
        img = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    except cv2.error as exc:
        raise EncodingError(f"Image decoding failed: {exc}") from exc
    if img is None:
        raise EncodingError(f"Image decoding failed ({len(data)} bytes)")
    return img


def frame_from_jpeg(
    data: bytes,
    *,
    timestamp: datetime | None = None,
    sequence: int = 0,
    settings: Mapping[str, Any] | None = None,
) -> Frame:
    """Wrap JPEG bytes from a device in a Frame, reading dimensions from them.

    Used by hardware backends whose frames arrive already encoded.

    Raises:
        EncodingError: If the bytes do not decode.
    """
    img = decode_frame(data)
    height, width = img.shape[:2]
    return Frame(
        width=width,
        height=height,
        channels=img.shape[2] if img.ndim == 3 else 1,
        data=bytes(data),
        timestamp=timestamp or datetime.now(UTC),
        sequence=sequence,
        settings=MappingProxyType(dict(settings)) if settings else _EMPTY_SETTINGS,
    )
