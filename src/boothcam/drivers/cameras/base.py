"""Shared lifecycle for capture strategies.

BaseCaptureStrategy owns everything the backends have in common: the
UNINITIALIZED -> READY <-> BUSY -> CLOSED state machine, reject-don't-queue
capture serialization, the capture timeout, settings validation and atomic
replacement, paced preview iteration, and crash-safe file publication.
Backends implement four hooks:

    _open()                      acquire the device (raise InitError)
    _close()                     release it
    _capture_to_file(settings)   acquire one still, return a CaptureResult
    _grab_preview(settings, seq) return one preview Frame

Files are written as hidden ``.part`` temporaries and renamed to
``{tag}_{epoch_millis}.{ext}`` only once complete, so a timed-out or
cancelled capture never leaves a half-written photo in the output directory.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, ClassVar

from boothcam.drivers.config import BoothConfig
from boothcam.errors import (
    CameraError,
    CaptureError,
    CaptureTimeoutError,
    DeviceBusyError,
    EncodingError,
    InitError,
    NotInitializedError,
    SettingsError,
)
from boothcam.observability import CaptureStats, LogContext, get_logger

if TYPE_CHECKING:
    from boothcam.utils.image import Frame

logger = get_logger(__name__)

__all__ = [
    "BaseCaptureStrategy",
    "CaptureResult",
    "DeviceState",
    "SettingSpec",
]


class DeviceState(Enum):
    """Lifecycle state of a capture device."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    BUSY = "busy"  # capture in progress, new captures rejected
    CLOSED = "closed"


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True, slots=True)
class SettingSpec:
    """Validation rule for one named setting.

    Either ``choices`` (exact values, strings matched case-insensitively)
    or a numeric ``minimum``/``maximum`` range.

    Example:
        >>> SettingSpec(choices=("auto", "manual")).validate("focus_mode", "AUTO")
        'auto'
        >>> SettingSpec(minimum=-100, maximum=100, integer=True).validate("b", 5)
        5
    """

    choices: tuple[Any, ...] | None = None
    minimum: float | None = None
    maximum: float | None = None
    integer: bool = False
    description: str = ""

    def validate(self, key: str, value: Any) -> Any:
        """Return the normalized value or raise SettingsError naming ``key``."""
        if self.choices is not None:
            return self._match_choice(key, value)

        if isinstance(value, bool) or not isinstance(value, int | float):
            raise SettingsError(key, f"{key} must be a number, got {value!r}")
        if self.integer:
            if isinstance(value, float) and not value.is_integer():
                raise SettingsError(key, f"{key} must be an integer, got {value!r}")
            value = int(value)
        if self.minimum is not None and value < self.minimum:
            raise SettingsError(key, f"{key} must be >= {self.minimum}, got {value!r}")
        if self.maximum is not None and value > self.maximum:
            raise SettingsError(key, f"{key} must be <= {self.maximum}, got {value!r}")
        return value

    def _match_choice(self, key: str, value: Any) -> Any:
        assert self.choices is not None
        for choice in self.choices:
            if isinstance(choice, str) and isinstance(value, str):
                if choice.lower() == value.strip().lower():
                    return choice
            elif type(value) is type(choice) and value == choice:
                return choice
            elif _is_number(value) and _is_number(choice) and value == choice:
                return choice
        raise SettingsError(
            key, f"{key} must be one of {list(self.choices)}, got {value!r}"
        )

    def describe(self) -> dict[str, Any]:
        """JSON-friendly description for status endpoints."""
        if self.choices is not None:
            return {"choices": list(self.choices), "description": self.description}
        return {
            "minimum": self.minimum,
            "maximum": self.maximum,
            "integer": self.integer,
            "description": self.description,
        }


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True, slots=True)
class CaptureResult:
    """Outcome of one successful capture_photo() call.

    Attributes:
        path: Absolute path of the published photo.
        size_bytes: File size on disk.
        timestamp: UTC capture time (also encoded in the filename).
        width: Image width in pixels.
        height: Image height in pixels.
        settings: Settings snapshot the photo was taken with.
    """

    path: Path
    size_bytes: int
    timestamp: datetime
    width: int
    height: int
    settings: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable representation."""
        return {
            "path": str(self.path),
            "filename": self.path.name,
            "size_bytes": self.size_bytes,
            "timestamp": self.timestamp.isoformat(),
            "width": self.width,
            "height": self.height,
            "settings": dict(self.settings),
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _error_type(exc: BaseException) -> str:
    if isinstance(exc, CaptureTimeoutError):
        return "timeout"
    if isinstance(exc, EncodingError):
        return "encoding"
    if isinstance(exc, DeviceBusyError):
        return "busy"
    return "capture"


# =============================================================================
# Base strategy
# =============================================================================


class BaseCaptureStrategy(ABC):
    """Lifecycle, serialization and persistence shared by all backends.

    Subclasses set ``tag`` (filename prefix and log label), ``extension``,
    ``SUPPORTED_SETTINGS`` and ``DEFAULT_SETTINGS``, and implement the four
    hooks listed in the module docstring.

    Concurrency model:
        Single event loop. ``capture_photo`` flips READY -> BUSY before its
        first await, so a second concurrent call sees BUSY and is rejected
        with DeviceBusyError instead of queueing. Settings are an immutable
        mapping replaced in one assignment; captures and preview frames
        take a snapshot reference, so none observes a half-applied update.
        ``_io_lock`` is available to backends whose device cannot serve a
        preview grab and a capture at the same time.
    """

    tag: ClassVar[str] = "cam"
    extension: ClassVar[str] = "jpg"
    SUPPORTED_SETTINGS: ClassVar[Mapping[str, SettingSpec]] = MappingProxyType({})
    DEFAULT_SETTINGS: ClassVar[Mapping[str, Any]] = MappingProxyType({})

    def __init__(
        self,
        config: BoothConfig | None = None,
        *,
        stats: CaptureStats | None = None,
    ) -> None:
        """Create an uninitialized strategy.

        No I/O happens here; the device is opened by initialize().

        Args:
            config: Booth configuration. Defaults to BoothConfig().
            stats: Capture statistics collector. A private one is created
                when omitted.
        """
        self._config = config or BoothConfig()
        self._stats = stats or CaptureStats()
        self._state = DeviceState.UNINITIALIZED
        self._settings: Mapping[str, Any] = MappingProxyType(
            dict(self.DEFAULT_SETTINGS)
        )
        self._last_error: BaseException | None = None
        self._capture_resolution = self._config.capture_resolution
        self._preview_resolution = self._config.preview_resolution
        self._preview_sequence = 0

        self._lifecycle_lock = asyncio.Lock()
        self._io_lock = asyncio.Lock()
        self._capture_task: asyncio.Task[CaptureResult] | None = None
        self._capture_deadline: float | None = None
        self._capture_aborted = False

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> DeviceState:
        """Current lifecycle state."""
        return self._state

    @property
    def settings(self) -> Mapping[str, Any]:
        """Read-only view of the settings the next capture will use."""
        return self._settings

    @property
    def last_error(self) -> BaseException | None:
        """Most recent initialize/capture failure, if any."""
        return self._last_error

    @property
    def config(self) -> BoothConfig:
        return self._config

    @property
    def stats(self) -> CaptureStats:
        return self._stats

    @property
    def capture_resolution(self) -> tuple[int, int]:
        """Still resolution; hardware backends update it in _open()."""
        return self._capture_resolution

    @property
    def resolution(self) -> tuple[int, int]:
        """Alias for capture_resolution."""
        return self._capture_resolution

    @property
    def preview_resolution(self) -> tuple[int, int]:
        return self._preview_resolution

    @property
    def output_dir(self) -> Path:
        return self._config.output_dir

    def describe(self) -> dict[str, Any]:
        """Status snapshot for the HTTP surface and CLI."""
        return {
            "tag": self.tag,
            "backend": type(self).__name__,
            "state": self._state.value,
            "settings": dict(self._settings),
            "supported_settings": {
                key: spec.describe() for key, spec in self.SUPPORTED_SETTINGS.items()
            },
            "capture_resolution": list(self._capture_resolution),
            "preview_resolution": list(self._preview_resolution),
            "output_dir": str(self.output_dir),
            "last_error": str(self._last_error) if self._last_error else None,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the device and make it READY.

        Idempotent: a READY or BUSY device returns immediately. A CLOSED
        device may be initialized again. Creates the output directory when
        it is missing, then runs the backend's _open() hook.

        Business context: The registry calls this once per swap, and the
        HTTP lifespan calls it at startup. The booth operator may also
        re-run it after plugging a camera back in.

        Raises:
            InitError: If the output directory cannot be created or the
                backend cannot be opened. The device stays UNINITIALIZED.

        Example:
            >>> strategy = SimulatedCameraStrategy(BoothConfig())
            >>> await strategy.initialize()
            >>> await strategy.initialize()  # no-op
            >>> strategy.state
            <DeviceState.READY: 'ready'>
        """
        async with self._lifecycle_lock:
            if self._state in (DeviceState.READY, DeviceState.BUSY):
                return

            with LogContext(tag=self.tag):
                logger.info("Initializing capture strategy", state=self._state.value)
                try:
                    await asyncio.to_thread(
                        self.output_dir.mkdir, parents=True, exist_ok=True
                    )
                    await self._open()
                except Exception as exc:
                    self._state = DeviceState.UNINITIALIZED
                    error = (
                        exc
                        if isinstance(exc, InitError)
                        else InitError(f"{self.tag}: initialization failed: {exc}")
                    )
                    self._last_error = error
                    logger.error("Initialization failed", error=str(exc))
                    await self._release_after_failed_open()
                    if error is exc:
                        raise
                    raise error from exc

                self._state = DeviceState.READY
                self._last_error = None
                logger.info(
                    "Capture strategy ready",
                    capture_resolution=list(self._capture_resolution),
                    preview_resolution=list(self._preview_resolution),
                )

    async def _release_after_failed_open(self) -> None:
        try:
            await self._close()
        except Exception as exc:
            logger.warning("Release after failed open also failed", error=str(exc))

    async def cleanup(self, timeout: float | None = None) -> None:
        """Release the device and move it to CLOSED.

        Safe to call repeatedly and before initialize(). An outstanding
        capture is given until its own deadline (or ``timeout`` seconds,
        when given) to finish; after that it is cancelled, its partial file
        is discarded, and its caller receives CaptureTimeoutError.

        Args:
            timeout: Maximum seconds to wait for an in-flight capture.
                None waits until the capture's own deadline.

        Raises:
            Exception: Whatever the backend's _close() raises. The state is
                CLOSED regardless.
        """
        async with self._lifecycle_lock:
            if self._state is DeviceState.CLOSED:
                return

            with LogContext(tag=self.tag):
                await self._drain_capture(timeout)
                previous = self._state
                self._state = DeviceState.CLOSED
                logger.info("Releasing capture strategy", previous=previous.value)
                await self._close()
                logger.info("Capture strategy closed")

    async def _drain_capture(self, timeout: float | None) -> None:
        task = self._capture_task
        if task is None or task.done():
            return

        loop = asyncio.get_running_loop()
        remaining = (self._capture_deadline or loop.time()) - loop.time()
        if timeout is not None:
            remaining = min(remaining, timeout)

        done, _ = await asyncio.wait({task}, timeout=max(0.0, remaining))
        if done:
            return

        logger.warning("Cancelling capture still running at cleanup")
        self._capture_aborted = True
        task.cancel()
        await asyncio.wait({task})

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    async def capture_photo(self) -> CaptureResult:
        """Acquire one full-resolution photo and publish it to output_dir.

        Transitions READY -> BUSY -> READY. The settings in effect when the
        call starts are the ones the photo is taken with.

        Returns:
            CaptureResult for ``{tag}_{epoch_millis}.{ext}``.

        Raises:
            NotInitializedError: Before initialize() or after cleanup().
                Nothing is written.
            DeviceBusyError: Another capture is in progress.
            CaptureTimeoutError: Acquisition exceeded capture_timeout_s,
                or cleanup() aborted it. No partial file remains.
            EncodingError: The frame could not be encoded.
            CaptureError: Any other acquisition or write failure.

        Example:
            >>> result = await strategy.capture_photo()
            >>> result.path.name
            'sim_1792418527123.jpg'
        """
        self._require_ready()
        if self._state is DeviceState.BUSY:
            self._stats.record_capture(0.0, False, error_type="busy")
            raise DeviceBusyError(f"{self.tag}: capture already in progress")

        self._state = DeviceState.BUSY
        self._capture_aborted = False
        settings = self._settings
        timeout = self._config.capture_timeout_s
        loop = asyncio.get_running_loop()
        started = loop.time()
        self._capture_deadline = started + timeout

        task = asyncio.create_task(
            self._capture_to_file(settings), name=f"{self.tag}-capture"
        )
        self._capture_task = task

        with LogContext(tag=self.tag):
            logger.debug("Capture started", timeout_s=timeout)
            try:
                result = await asyncio.wait_for(task, timeout)
            except TimeoutError:
                error: CaptureError = CaptureTimeoutError(
                    f"{self.tag}: capture exceeded {timeout:.1f}s"
                )
                self._fail_capture(error, started)
                raise error from None
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if self._capture_aborted and not (current and current.cancelling()):
                    error = CaptureTimeoutError(
                        f"{self.tag}: capture aborted by cleanup"
                    )
                    self._fail_capture(error, started)
                    raise error from None
                raise
            except CaptureError as exc:
                self._fail_capture(exc, started)
                raise
            except Exception as exc:
                error = CaptureError(f"{self.tag}: capture failed: {exc}")
                self._fail_capture(error, started)
                raise error from exc
            finally:
                self._capture_task = None
                self._capture_deadline = None
                if self._state is DeviceState.BUSY:
                    self._state = DeviceState.READY

            duration_ms = (loop.time() - started) * 1000
            self._stats.record_capture(duration_ms, True)
            logger.info(
                "Capture complete",
                path=str(result.path),
                size_bytes=result.size_bytes,
                duration_ms=round(duration_ms, 1),
            )
            return result

    def _fail_capture(self, error: CaptureError, started: float) -> None:
        duration_ms = (asyncio.get_running_loop().time() - started) * 1000
        self._last_error = error
        self._stats.record_capture(duration_ms, False, error_type=_error_type(error))
        logger.error(
            "Capture failed", error=str(error), duration_ms=round(duration_ms, 1)
        )

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    async def grab_preview_frame(self) -> Frame:
        """Produce one preview-resolution frame with the current settings.

        Allowed while a capture is running.

        Raises:
            NotInitializedError: Device not READY/BUSY.
            CameraError: Backend frame failure (CaptureError for unexpected
                exceptions).
        """
        self._require_ready()
        self._preview_sequence += 1
        try:
            return await self._grab_preview(self._settings, self._preview_sequence)
        except CameraError:
            raise
        except Exception as exc:
            raise CaptureError(f"{self.tag}: preview frame failed: {exc}") from exc

    async def preview_frames(self) -> AsyncIterator[Frame]:
        """Yield preview frames forever at ``config.preview_fps``.

        The iterator never ends on its own; close it (or cancel the task
        consuming it) to stop. Ticks are scheduled against absolute
        deadlines so rendering time does not lower the rate; a consumer
        that falls behind skips missed ticks instead of receiving a burst.

        Raises:
            NotInitializedError: Device not ready, or closed mid-stream.
        """
        loop = asyncio.get_running_loop()
        interval = self._config.preview_interval_s
        next_tick = loop.time()
        while True:
            frame = await self.grab_preview_frame()
            yield frame
            next_tick += interval
            delay = next_tick - loop.time()
            if delay < 0:
                next_tick = loop.time()
                delay = 0.0
            await asyncio.sleep(delay)

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def adjust_settings(self, options: Mapping[str, Any]) -> Mapping[str, Any]:
        """Validate and apply a settings payload atomically.

        Every key is validated before anything changes; the first invalid
        key aborts the whole payload. Accepted values apply from the next
        capture or preview frame, never to one already in progress.

        Args:
            options: Option name to value. Unknown names are rejected.

        Returns:
            The new settings mapping (read-only).

        Raises:
            NotInitializedError: Device not ready.
            SettingsError: Unknown key or invalid value; ``.key`` names it.
                Settings are unchanged.

        Example:
            >>> await strategy.adjust_settings({"iso": 800, "brightness": 20})
            mappingproxy({'iso': 800, ..., 'brightness': 20})
        """
        self._require_ready()
        if not isinstance(options, Mapping):
            raise SettingsError("<payload>", "settings payload must be a mapping")

        validated: dict[str, Any] = {}
        for key, value in options.items():
            spec = self.SUPPORTED_SETTINGS.get(key)
            if spec is None:
                raise SettingsError(
                    key,
                    f"{self.tag} does not support setting {key!r} "
                    f"(supported: {sorted(self.SUPPORTED_SETTINGS)})",
                )
            validated[key] = spec.validate(key, value)

        if validated:
            await self._apply_settings(validated)
            self._settings = MappingProxyType({**self._settings, **validated})
            logger.info("Settings updated", tag=self.tag, changes=validated)
        return self._settings

    # -------------------------------------------------------------------------
    # Persistence helpers
    # -------------------------------------------------------------------------

    def _new_temp_path(self) -> Path:
        return self.output_dir / f".{self.tag}_{uuid.uuid4().hex}.part"

    async def _write_atomic(self, data: bytes, timestamp: datetime) -> Path:
        """Write ``data`` to a temporary file off-loop, then publish it.

        If the awaiting task is cancelled mid-write, whichever side finishes
        last (this coroutine or the writer thread) removes the temporary.
        """
        tmp = self._new_temp_path()
        abandoned = threading.Event()

        def write() -> None:
            try:
                tmp.write_bytes(data)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
            if abandoned.is_set():
                tmp.unlink(missing_ok=True)

        try:
            await asyncio.to_thread(write)
        except asyncio.CancelledError:
            abandoned.set()
            self._discard(tmp)
            raise
        except OSError as exc:
            raise CaptureError(f"{self.tag}: failed writing {tmp.name}: {exc}") from exc
        return self._publish(tmp, timestamp)

    def _publish(self, tmp: Path, timestamp: datetime) -> Path:
        """Rename a completed temporary to its final, unique name.

        Runs without awaiting, so no other capture on this loop can claim
        the same name between the existence check and the rename. Bumps the
        millisecond component until the name is free, which keeps lexical
        order equal to creation order.
        """
        millis = int(timestamp.timestamp() * 1000)
        while True:
            final = self.output_dir / f"{self.tag}_{millis:013d}.{self.extension}"
            if not final.exists():
                break
            millis += 1
        try:
            tmp.replace(final)
        except OSError as exc:
            self._discard(tmp)
            raise CaptureError(
                f"{self.tag}: failed publishing {final.name}: {exc}"
            ) from exc
        return final.resolve()

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            # Writer thread may still hold it open; it unlinks on completion.
            logger.debug(
                "Temporary file not removed yet", path=str(path), error=str(exc)
            )

    def _build_result(
        self,
        path: Path,
        timestamp: datetime,
        resolution: tuple[int, int],
        settings: Mapping[str, Any],
    ) -> CaptureResult:
        return CaptureResult(
            path=path,
            size_bytes=path.stat().st_size,
            timestamp=timestamp,
            width=resolution[0],
            height=resolution[1],
            settings=MappingProxyType(dict(settings)),
        )

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def _require_ready(self) -> None:
        if self._state not in (DeviceState.READY, DeviceState.BUSY):
            raise NotInitializedError(
                f"{self.tag}: device is {self._state.value}; call initialize() first"
            )

    # -------------------------------------------------------------------------
    # Backend hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _open(self) -> None:
        """Acquire the device. Raise InitError on failure."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the device. Must tolerate never having been opened."""

    @abstractmethod
    async def _capture_to_file(self, settings: Mapping[str, Any]) -> CaptureResult:
        """Acquire one photo with ``settings`` and publish it."""

    @abstractmethod
    async def _grab_preview(self, settings: Mapping[str, Any], sequence: int) -> Frame:
        """Return one preview frame."""

    async def _apply_settings(self, changes: Mapping[str, Any]) -> None:
        """Push validated changes to hardware before they become current.

        Default does nothing. Raise SettingsError to reject the payload.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}(tag={self.tag!r}, state={self._state.value})"
