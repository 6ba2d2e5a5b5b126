"""Exception hierarchy for boothcam.

Every error raised by the capture layer derives from CameraError so the
HTTP surface and CLI can map the whole family in one place. Per-call errors
never leave the device in a corrupt state; see the individual classes for the
state each one guarantees.

Hierarchy:
    CameraError
    ├── NotInitializedError   operation before initialize() or after cleanup()
    ├── DeviceBusyError       capture rejected, another capture in progress
    ├── CaptureError          acquisition failed, device back to READY
    │   ├── EncodingError     frame could not be encoded or decoded
    │   └── CaptureTimeoutError  acquisition exceeded capture_timeout_s
    ├── SettingsError         option unknown or out of range
    ├── InitError             backend could not be opened
    └── SwapError             strategy transition failed

ConfigError is a ValueError raised while reading configuration.
"""

from __future__ import annotations

__all__ = [
    "CameraError",
    "NotInitializedError",
    "DeviceBusyError",
    "CaptureError",
    "EncodingError",
    "CaptureTimeoutError",
    "SettingsError",
    "InitError",
    "SwapError",
    "ConfigError",
]


class CameraError(Exception):
    """Base exception for camera operations."""

    pass


class NotInitializedError(CameraError):
    """Raised when an operation requires an initialized device."""

    pass


class DeviceBusyError(CameraError):
    """Raised when a capture is requested while another is in progress.

    Callers may retry after a short backoff; the in-flight capture is
    unaffected.
    """

    pass


class CaptureError(CameraError):
    """Raised when acquisition or persistence of a photo fails."""

    pass


class EncodingError(CaptureError):
    """Raised when a frame cannot be encoded to (or decoded from) JPEG."""

    pass


class CaptureTimeoutError(CaptureError):
    """Raised when a capture exceeds its time bound.

    Partial output is removed before this is raised.
    """

    pass


class SettingsError(CameraError):
    """Raised when a settings payload fails validation.

    Attributes:
        key: Name of the offending option.
    """

    def __init__(self, key: str, message: str | None = None) -> None:
        """Create a settings error naming the offending option.

        Args:
            key: Option name that failed validation.
            message: Human readable reason. Defaults to "unsupported setting".

        Example:
            >>> err = SettingsError("iso", "iso must be one of [100, 200]")
            >>> err.key
            'iso'
        """
        self.key = key
        super().__init__(message or f"unsupported setting: {key}")


class InitError(CameraError):
    """Raised when a backend cannot be opened during initialize()."""

    pass


class SwapError(CameraError):
    """Raised when the registry cannot complete a strategy swap."""

    pass


class ConfigError(ValueError):
    """Raised for invalid configuration values."""

    pass
