"""Structured logging for boothcam.

Thin layer over the standard logging module that lets every call carry
key-value data alongside the message:

    logger = get_logger(__name__)
    logger.info("Capture complete", path=str(result.path), size_bytes=1234)

Key-value pairs from an enclosing LogContext are merged in automatically,
with explicit keyword arguments taking precedence. Output is either
human-readable (``message | key=value``) or one JSON object per line.

Untrusted values (request payloads, device names reported by hardware)
belong in keyword arguments, never interpolated into the message, so that
the formatter can escape them.

Example:
    configure_logging(level="DEBUG", json_format=True)

    with LogContext(backend="sim"):
        logger.info("Preview started", fps=10)
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, TextIO, cast

__all__ = [
    "JSONFormatter",
    "LogContext",
    "StructuredFormatter",
    "StructuredLogger",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

#: Name of the package root logger every module logger descends from.
ROOT_LOGGER_NAME = "boothcam"

_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "boothcam_log_context", default={}
)


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger(logging.Logger):
    """Logger accepting keyword arguments as structured data.

    The standard level methods (debug, info, warning, error, exception,
    critical) forward unknown keyword arguments to ``_log``; this class
    collects them into ``record.structured_data`` instead of rejecting them.

    Example:
        >>> logger = get_logger("boothcam.drivers")
        >>> logger.warning("Setting rejected", key="iso", value=12)
    """

    def _log(
        self,
        level: int,
        msg: object,
        args: tuple[Any, ...] | MutableMapping[str, Any] | None,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **kwargs: Any,
    ) -> None:
        """Merge LogContext values and kwargs into the record's extra data.

        Args:
            level: Numeric log level.
            msg: Log message, may contain % placeholders.
            args: Arguments for % formatting.
            exc_info: Exception info, True for the current exception.
            extra: Additional LogRecord attributes. ``structured_data`` is
                overwritten.
            stack_info: Include the current stack.
            stacklevel: Frames to skip when locating the caller.
            **kwargs: Structured key-value data.
        """
        structured_data = {**_log_context.get(), **kwargs}
        extra = dict(extra) if extra else {}
        extra["structured_data"] = structured_data
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


# =============================================================================
# Formatters
# =============================================================================


class StructuredFormatter(logging.Formatter):
    """Human-readable formatter: ``time - name - level - message | k=v``."""

    def __init__(
        self,
        fmt: str | None = None,
        datefmt: str | None = None,
        include_structured: bool = True,
    ) -> None:
        """Create the formatter.

        Args:
            fmt: Base format string. Defaults to
                ``%(asctime)s - %(name)s - %(levelname)s - %(message)s``.
            datefmt: strftime format for ``%(asctime)s``.
            include_structured: Append structured data after the message.
        """
        if fmt is None:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt, datefmt)
        self.include_structured = include_structured

    def format(self, record: logging.LogRecord) -> str:
        """Format the record and append its structured data, if any.

        Args:
            record: Record to format. A missing ``structured_data``
                attribute is treated as empty.

        Returns:
            The formatted line, e.g.
            ``... - INFO - Capture complete | tag=sim size_bytes=20480``.
        """
        base = super().format(record)
        if not self.include_structured:
            return base

        structured = getattr(record, "structured_data", {})
        if not structured:
            return base

        pairs = " ".join(f"{k}={_format_value(v)}" for k, v in structured.items())
        return f"{base} | {pairs}"


class JSONFormatter(logging.Formatter):
    """One JSON object per line (NDJSON) for log shipping.

    Keys: timestamp (UTC ISO 8601), level, logger, message, exception (when
    present), plus every structured data key at top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the record to a single JSON line.

        Values json cannot encode are converted with str().

        Example:
            >>> line = JSONFormatter().format(record)
            >>> json.loads(line)["level"]
            'INFO'
        """
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "structured_data", {}))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _format_value(value: Any) -> str:
    """Render one structured value for the key=value formatter.

    None becomes ``null``, strings containing whitespace are quoted, dicts
    and lists are JSON encoded, everything else goes through str().

    Example:
        >>> _format_value("two words")
        '"two words"'
        >>> _format_value({"iso": 400})
        '{"iso": 400}'
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        if any(ch.isspace() for ch in value):
            return json.dumps(value)
        return value
    if isinstance(value, dict | list | tuple):
        return json.dumps(value, default=str)
    return str(value)


# =============================================================================
# Context Management
# =============================================================================


class LogContext:
    """Context manager adding key-value pairs to every log call inside it.

    Backed by contextvars, so values are isolated per asyncio task and per
    thread. Contexts nest; inner values override outer ones.

    Example:
        >>> with LogContext(request_id="a1"):
        ...     with LogContext(backend="dslr"):
        ...         logger.info("Capturing")  # request_id and backend
    """

    def __init__(self, **kwargs: Any) -> None:
        """Store the pairs to activate on enter."""
        self._values = kwargs
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        """Activate the merged context and keep a token for restoration."""
        self._token = _log_context.set({**_log_context.get(), **self._values})
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Restore the previous context. Exceptions are not suppressed."""
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    def __repr__(self) -> str:
        return f"LogContext({self._values!r})"


# =============================================================================
# Configuration
# =============================================================================

_configured = False
_config_lock = threading.Lock()


def configure_logging(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: TextIO | None = None,
    include_structured: bool = True,
    force: bool = False,
) -> None:
    """Configure the boothcam logger hierarchy.

    Installs one stream handler on the ``boothcam`` logger and stops
    propagation to the root logger so host applications do not see
    duplicate lines. Only the first call has an effect unless ``force`` is
    set, which tears down the existing handler first.

    Args:
        level: Minimum level, as int or name ("DEBUG", "INFO", ...).
        json_format: Emit NDJSON instead of human-readable lines.
        stream: Destination stream. Defaults to sys.stderr.
        include_structured: Append key=value data in human-readable mode.
        force: Reconfigure even if already configured.

    Raises:
        ValueError: If ``level`` is an unknown level name.

    Example:
        >>> configure_logging(level="DEBUG")
        >>> configure_logging(json_format=True, force=True)
    """
    with _config_lock:
        if force:
            _reset_logging_impl()
        _configure_logging_impl(level, json_format, stream, include_structured)


def _configure_logging_impl(
    level: int | str = logging.INFO,
    json_format: bool = False,
    stream: TextIO | None = None,
    include_structured: bool = True,
) -> None:
    """Configure with the lock already held."""
    global _configured

    if _configured:
        return

    if isinstance(level, str):
        level = level.upper()

    logging.setLoggerClass(StructuredLogger)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    formatter: logging.Formatter
    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StructuredFormatter(include_structured=include_structured)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.addHandler(handler)
    root.propagate = False

    _configured = True


def _reset_logging_impl() -> None:
    """Reset with the lock already held."""
    global _configured

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    _configured = False


def reset_logging() -> None:
    """Remove boothcam handlers and mark logging unconfigured.

    Intended for tests. The next configure_logging() or get_logger() call
    configures again.
    """
    with _config_lock:
        _reset_logging_impl()


def get_logger(name: str) -> StructuredLogger:
    """Return a StructuredLogger, configuring defaults on first use.

    Args:
        name: Logger name, normally ``__name__``. Names outside the
            ``boothcam`` hierarchy work but bypass its handler.

    Returns:
        Logger accepting ``logger.info("msg", key=value)``.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Strategy initialized", tag="sim")
    """
    if not _configured:
        with _config_lock:
            if not _configured:  # pragma: no branch
                _configure_logging_impl()

    return cast(StructuredLogger, logging.getLogger(name))
