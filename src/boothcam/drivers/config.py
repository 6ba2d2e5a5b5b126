"""Booth configuration and strategy factory.

Selects which capture backend the booth runs (simulated, gphoto2 DSLR or
webcam) and carries the knobs every strategy shares: output directory,
resolutions, preview rate, capture timeout. Configuration comes from code,
from ``BOOTHCAM_*`` environment variables, or from CLI flags layered on top.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from boothcam.errors import ConfigError

if TYPE_CHECKING:
    from boothcam.drivers.cameras import CaptureStrategy
    from boothcam.observability.stats import CaptureStats

__all__ = [
    "Backend",
    "BoothConfig",
    "StrategyFactory",
    "configure",
    "get_factory",
]

# =============================================================================
# Constants
# =============================================================================

DEFAULT_CAPTURE_RESOLUTION: tuple[int, int] = (1920, 1080)
DEFAULT_PREVIEW_RESOLUTION: tuple[int, int] = (640, 480)
DEFAULT_PREVIEW_FPS = 10.0
DEFAULT_CAPTURE_TIMEOUT_S = 10.0
DEFAULT_CAPTURE_LATENCY_S = 1.0
DEFAULT_JPEG_QUALITY = 90

#: Prefix shared by every environment variable read in from_env().
ENV_PREFIX = "BOOTHCAM_"

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off", ""})


class Backend(Enum):
    """Capture backend selection."""

    SIMULATED = "simulated"  # Synthetic frames, no hardware
    GPHOTO2 = "gphoto2"  # DSLR/mirrorless over the gphoto2 CLI
    WEBCAM = "webcam"  # UVC webcam via OpenCV

    @classmethod
    def parse(cls, value: Backend | str) -> Backend:
        """Resolve a backend from an enum, its value, or a short alias.

        Aliases: ``sim``/``mock`` for SIMULATED, ``dslr`` for GPHOTO2.

        Raises:
            ConfigError: If the name matches no backend.

        Example:
            >>> Backend.parse("dslr")
            <Backend.GPHOTO2: 'gphoto2'>
        """
        if isinstance(value, Backend):
            return value
        name = str(value).strip().lower()
        name = _BACKEND_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(b.value for b in cls)
            raise ConfigError(
                f"Unknown backend {value!r} (expected one of: {valid})"
            ) from None


_BACKEND_ALIASES: Mapping[str, str] = {
    "sim": "simulated",
    "mock": "simulated",
    "dslr": "gphoto2",
}


def _default_output_dir() -> Path:
    """Return ~/.boothcam/captures, where photos land by default.

    The directory is not created here; strategies create it on demand
    during initialize().
    """
    return Path.home() / ".boothcam" / "captures"


def _default_asset_dir() -> Path:
    """Return ~/.boothcam/assets, home of the simulator's baseline image."""
    return Path.home() / ".boothcam" / "assets"


@dataclass
class BoothConfig:
    """Configuration shared by every capture strategy.

    Attributes:
        backend: Which strategy StrategyFactory builds.
        output_dir: Managed directory for captured photos.
        asset_dir: Directory for static assets (simulator baseline image).
        capture_resolution: Still size (width, height). Hardware backends
            may report a different native size after initialize().
        preview_resolution: Live preview size (width, height).
        preview_fps: Target preview frame rate.
        capture_timeout_s: Upper bound on one capture, acquisition included.
        capture_latency_s: Simulated acquisition delay (simulator only).
        jpeg_quality: Default JPEG quality 1-100 for rendered frames.
        webcam_device: OpenCV device index for the webcam backend.
        gphoto2_binary: gphoto2 executable name or path.
        gphoto2_port: Fixed gphoto2 port (e.g. "usb:001,004"). None uses
            the first camera reported by auto-detect.
        log_level: Level passed to configure_logging().
        log_json: Emit NDJSON logs.

    Raises:
        ConfigError: From __post_init__ when a value is out of range.
    """

    backend: Backend = Backend.SIMULATED

    # Storage
    output_dir: Path = field(default_factory=_default_output_dir)
    asset_dir: Path = field(default_factory=_default_asset_dir)

    # Imaging
    capture_resolution: tuple[int, int] = DEFAULT_CAPTURE_RESOLUTION
    preview_resolution: tuple[int, int] = DEFAULT_PREVIEW_RESOLUTION
    preview_fps: float = DEFAULT_PREVIEW_FPS
    capture_timeout_s: float = DEFAULT_CAPTURE_TIMEOUT_S
    capture_latency_s: float = DEFAULT_CAPTURE_LATENCY_S
    jpeg_quality: int = DEFAULT_JPEG_QUALITY

    # Hardware backends
    webcam_device: int = 0
    gphoto2_binary: str = "gphoto2"
    gphoto2_port: str | None = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        self.backend = Backend.parse(self.backend)
        self.output_dir = Path(self.output_dir).expanduser()
        self.asset_dir = Path(self.asset_dir).expanduser()
        self.capture_resolution = _check_resolution(
            "capture_resolution", self.capture_resolution
        )
        self.preview_resolution = _check_resolution(
            "preview_resolution", self.preview_resolution
        )
        if self.preview_fps <= 0:
            raise ConfigError(f"preview_fps must be > 0, got {self.preview_fps}")
        if self.capture_timeout_s <= 0:
            raise ConfigError(
                f"capture_timeout_s must be > 0, got {self.capture_timeout_s}"
            )
        if self.capture_latency_s < 0:
            raise ConfigError(
                f"capture_latency_s must be >= 0, got {self.capture_latency_s}"
            )
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigError(f"jpeg_quality must be 1-100, got {self.jpeg_quality}")
        self.log_level = str(self.log_level).upper()

    @property
    def preview_interval_s(self) -> float:
        """Seconds between preview frames."""
        return 1.0 / self.preview_fps

    def replace(self, **changes: Any) -> BoothConfig:
        """Return a copy with ``changes`` applied and re-validated.

        Keys whose value is None are ignored so CLI flags that were not
        given leave the existing value in place.

        Example:
            >>> BoothConfig().replace(backend="webcam", preview_fps=None).backend
            <Backend.WEBCAM: 'webcam'>
        """
        return dataclasses.replace(
            self, **{k: v for k, v in changes.items() if v is not None}
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> BoothConfig:
        """Build a config from ``BOOTHCAM_*`` environment variables.

        Recognised variables (unset ones keep their defaults):
        BOOTHCAM_BACKEND, BOOTHCAM_OUTPUT_DIR, BOOTHCAM_ASSET_DIR,
        BOOTHCAM_CAPTURE_RESOLUTION ("1920x1080"),
        BOOTHCAM_PREVIEW_RESOLUTION, BOOTHCAM_PREVIEW_FPS,
        BOOTHCAM_CAPTURE_TIMEOUT, BOOTHCAM_CAPTURE_LATENCY,
        BOOTHCAM_JPEG_QUALITY, BOOTHCAM_WEBCAM_DEVICE,
        BOOTHCAM_GPHOTO2_BINARY, BOOTHCAM_GPHOTO2_PORT,
        BOOTHCAM_LOG_LEVEL, BOOTHCAM_LOG_JSON.

        Args:
            environ: Mapping to read instead of os.environ (tests).

        Returns:
            Validated BoothConfig.

        Raises:
            ConfigError: If a variable cannot be parsed or is out of range.

        Example:
            >>> cfg = BoothConfig.from_env({"BOOTHCAM_BACKEND": "webcam"})
            >>> cfg.backend
            <Backend.WEBCAM: 'webcam'>
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value is None else value.strip()

        kwargs: dict[str, Any] = {}
        readers: dict[str, tuple[str, Any]] = {
            "BACKEND": ("backend", Backend.parse),
            "OUTPUT_DIR": ("output_dir", Path),
            "ASSET_DIR": ("asset_dir", Path),
            "CAPTURE_RESOLUTION": ("capture_resolution", _parse_resolution),
            "PREVIEW_RESOLUTION": ("preview_resolution", _parse_resolution),
            "PREVIEW_FPS": ("preview_fps", float),
            "CAPTURE_TIMEOUT": ("capture_timeout_s", float),
            "CAPTURE_LATENCY": ("capture_latency_s", float),
            "JPEG_QUALITY": ("jpeg_quality", int),
            "WEBCAM_DEVICE": ("webcam_device", int),
            "GPHOTO2_BINARY": ("gphoto2_binary", str),
            "GPHOTO2_PORT": ("gphoto2_port", str),
            "LOG_LEVEL": ("log_level", str),
            "LOG_JSON": ("log_json", _parse_bool),
        }
        for suffix, (attr, parse) in readers.items():
            raw = get(suffix)
            if raw is None:
                continue
            try:
                kwargs[attr] = parse(raw)
            except ConfigError:
                raise
            except ValueError as exc:
                raise ConfigError(
                    f"Invalid {ENV_PREFIX}{suffix}={raw!r}: {exc}"
                ) from exc
        return cls(**kwargs)


def _check_resolution(name: str, value: Any) -> tuple[int, int]:
    try:
        width, height = (int(v) for v in value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be (width, height), got {value!r}") from None
    if width <= 0 or height <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return (width, height)


def _parse_resolution(text: str) -> tuple[int, int]:
    """Parse "WIDTHxHEIGHT" (also accepts "," or "X")."""
    parts = text.lower().replace(",", "x").split("x")
    if len(parts) != 2:
        raise ValueError("expected WIDTHxHEIGHT")
    return (int(parts[0]), int(parts[1]))


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("expected a boolean (1/0, true/false, yes/no, on/off)")


# =============================================================================
# Factory
# =============================================================================


class StrategyFactory:
    """Builds capture strategies for the configured backend.

    Thread Safety:
        Not thread-safe. Configure once at startup; the registry calls
        create_strategy() from the event loop only.
    """

    def __init__(self, config: BoothConfig | None = None) -> None:
        """Create a factory bound to ``config`` (defaults to BoothConfig())."""
        self.config = config or BoothConfig()

    def create_strategy(
        self,
        backend: Backend | str | None = None,
        *,
        stats: CaptureStats | None = None,
    ) -> CaptureStrategy:
        """Create an uninitialized strategy for ``backend``.

        Business context: The booth starts on the simulator during setup and
        is switched to the DSLR once the camera is plugged in; the registry
        asks the factory for the incoming strategy on every swap.

        Args:
            backend: Backend to build. None uses ``config.backend``.
            stats: Statistics collector shared with the strategy.

        Returns:
            A strategy in UNINITIALIZED state. Call initialize() before use.

        Raises:
            ConfigError: If ``backend`` names no known backend.

        Example:
            >>> factory = StrategyFactory(BoothConfig(output_dir="/tmp/booth"))
            >>> factory.create_strategy("sim").tag
            'sim'
        """
        selected = Backend.parse(backend) if backend is not None else (
            self.config.backend
        )

        if selected is Backend.GPHOTO2:
            from boothcam.drivers.cameras.gphoto2 import GPhoto2CameraStrategy

            return GPhoto2CameraStrategy(self.config, stats=stats)
        if selected is Backend.WEBCAM:
            from boothcam.drivers.cameras.webcam import WebcamCameraStrategy

            return WebcamCameraStrategy(self.config, stats=stats)

        from boothcam.drivers.cameras.simulated import SimulatedCameraStrategy

        return SimulatedCameraStrategy(self.config, stats=stats)


# =============================================================================
# Global Singleton
# =============================================================================
# Not thread-safe: configure once at startup before serving requests.

_factory: StrategyFactory | None = None


def get_factory() -> StrategyFactory:
    """Return the process-wide factory, creating a default one on first use."""
    global _factory
    if _factory is None:
        _factory = StrategyFactory()
    return _factory


def configure(config: BoothConfig) -> StrategyFactory:
    """Replace the process-wide factory with one bound to ``config``.

    Strategies already created keep the config they were built with.

    Example:
        >>> configure(BoothConfig.from_env())
    """
    global _factory
    _factory = StrategyFactory(config)
    return _factory
