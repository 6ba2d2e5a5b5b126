"""Capture statistics for a strategy.

Keeps cumulative counters plus a bounded window of recent capture records,
and computes summaries on demand. Thread-safe: captures finish on the event
loop while the HTTP status route may read from a worker thread.

Example:
    stats = CaptureStats()
    stats.record_capture(duration_ms=1012.5, success=True)
    stats.record_capture(duration_ms=0, success=False, error_type="timeout")

    summary = stats.get_summary()
    print(f"{summary.success_rate:.0%} ok, p95 {summary.p95_duration_ms:.0f}ms")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

__all__ = ["CaptureStats", "StatsSummary", "DEFAULT_STATS_WINDOW_SIZE"]

#: Number of capture records retained for duration statistics.
DEFAULT_STATS_WINDOW_SIZE: int = 500


@dataclass(slots=True)
class StatsSummary:
    """Point-in-time capture statistics.

    Attributes:
        total_captures: Capture attempts since creation or reset.
        successful_captures: Attempts that produced a file.
        failed_captures: Attempts that raised.
        success_rate: successful / total, 0.0 when nothing was recorded.
        min_duration_ms: Fastest successful capture in the window.
        max_duration_ms: Slowest successful capture in the window.
        avg_duration_ms: Mean successful capture duration in the window.
        p95_duration_ms: 95th percentile successful duration in the window.
        error_counts: Failures keyed by error type.
        last_capture_time: UTC time of the latest attempt.
        uptime_seconds: Seconds since creation or reset.
    """

    total_captures: int = 0
    successful_captures: int = 0
    failed_captures: int = 0
    success_rate: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_capture_time: datetime | None = None
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable copy of the summary.

        Example:
            >>> CaptureStats().get_summary().to_dict()["total_captures"]
            0
        """
        return {
            "total_captures": self.total_captures,
            "successful_captures": self.successful_captures,
            "failed_captures": self.failed_captures,
            "success_rate": self.success_rate,
            "min_duration_ms": self.min_duration_ms,
            "max_duration_ms": self.max_duration_ms,
            "avg_duration_ms": self.avg_duration_ms,
            "p95_duration_ms": self.p95_duration_ms,
            "error_counts": dict(self.error_counts),
            "last_capture_time": (
                self.last_capture_time.isoformat() if self.last_capture_time else None
            ),
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass(slots=True)
class _CaptureRecord:
    duration_ms: float
    success: bool
    error_type: str | None = None


class CaptureStats:
    """Thread-safe capture statistics collector."""

    def __init__(self, window_size: int = DEFAULT_STATS_WINDOW_SIZE) -> None:
        """Create an empty collector.

        Args:
            window_size: Records kept for duration statistics. Counters
                are cumulative regardless of the window.
        """
        self._records: deque[_CaptureRecord] = deque(maxlen=window_size)
        self._error_counts: dict[str, int] = {}
        self._total = 0
        self._successful = 0
        self._start_time = time.monotonic()
        self._last_capture_time: datetime | None = None
        self._lock = threading.Lock()

    def record_capture(
        self,
        duration_ms: float,
        success: bool,
        error_type: str | None = None,
    ) -> None:
        """Record one capture attempt.

        Args:
            duration_ms: Wall time of the attempt in milliseconds.
            success: True when a file was written.
            error_type: Short failure category ("busy", "timeout",
                "encoding", ...). Ignored for successes.

        Example:
            >>> stats.record_capture(950.0, True)
            >>> stats.record_capture(10_000.0, False, error_type="timeout")
        """
        with self._lock:
            self._records.append(_CaptureRecord(duration_ms, success, error_type))
            self._total += 1
            if success:
                self._successful += 1
            elif error_type:
                self._error_counts[error_type] = (
                    self._error_counts.get(error_type, 0) + 1
                )
            self._last_capture_time = datetime.now(UTC)

    def get_summary(self) -> StatsSummary:
        """Compute a summary snapshot.

        Duration statistics use successful records in the window only.

        Returns:
            StatsSummary; later captures do not mutate it.
        """
        with self._lock:
            total = self._total
            successful = self._successful
            error_counts = dict(self._error_counts)
            last_capture_time = self._last_capture_time
            start_time = self._start_time
            durations = [r.duration_ms for r in self._records if r.success]

        if durations:
            durations.sort()
            min_dur = durations[0]
            max_dur = durations[-1]
            avg_dur = sum(durations) / len(durations)
            p95_dur = _percentile(durations, 95)
        else:
            min_dur = max_dur = avg_dur = p95_dur = 0.0

        return StatsSummary(
            total_captures=total,
            successful_captures=successful,
            failed_captures=total - successful,
            success_rate=successful / total if total else 0.0,
            min_duration_ms=min_dur,
            max_duration_ms=max_dur,
            avg_duration_ms=avg_dur,
            p95_duration_ms=p95_dur,
            error_counts=error_counts,
            last_capture_time=last_capture_time,
            uptime_seconds=time.monotonic() - start_time,
        )

    def reset(self) -> None:
        """Clear every record and counter and restart the uptime clock."""
        with self._lock:
            self._records.clear()
            self._error_counts.clear()
            self._total = 0
            self._successful = 0
            self._start_time = time.monotonic()
            self._last_capture_time = None

    def to_dict(self) -> dict[str, Any]:
        """Summary as a plain dict, stamped with the export time."""
        data = self.get_summary().to_dict()
        data["timestamp"] = datetime.now(UTC).isoformat()
        return data


def _percentile(sorted_data: list[float], p: float) -> float:
    """Linear-interpolated percentile of ascending data.

    Args:
        sorted_data: Values sorted ascending. Empty returns 0.0.
        p: Percentile in [0, 100].

    Raises:
        ValueError: If p is outside [0, 100].

    Example:
        >>> _percentile([100.0, 150.0, 200.0], 95)
        195.0
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be between 0 and 100, got {p}")
    if not sorted_data:
        return 0.0

    k = (len(sorted_data) - 1) * (p / 100)
    lo = int(k)
    hi = min(lo + 1, len(sorted_data) - 1)
    if lo == hi:
        return sorted_data[lo]
    fraction = k - lo
    return sorted_data[lo] * (1 - fraction) + sorted_data[hi] * fraction
