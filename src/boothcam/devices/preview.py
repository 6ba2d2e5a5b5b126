"""Live preview fan-out.

PreviewStreamManager runs at most one producer task per capture strategy and
hands every frame it produces to all current subscribers. The producer starts
with the first subscription and is cancelled, and awaited, when the last one
goes away, so an idle booth does no preview work at all.

Each subscription owns a small bounded queue. A slow consumer loses its
oldest queued frames rather than slowing the producer or the other
subscribers. Unsubscribing purges the queue, so a cancelled subscriber never
receives another frame, not even one produced before it left.

Example:
    manager = PreviewStreamManager(strategy)
    async with manager.subscribe() as frames:
        async for frame in frames:
            await websocket.send_bytes(frame.data)
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections.abc import Callable
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any

from boothcam.errors import NotInitializedError
from boothcam.observability import get_logger

if TYPE_CHECKING:
    from boothcam.drivers.cameras import CaptureStrategy
    from boothcam.utils.image import Frame

logger = get_logger(__name__)

__all__ = [
    "DEFAULT_MAX_PENDING",
    "PreviewState",
    "PreviewStreamManager",
    "PreviewSubscription",
]

#: Frames a subscriber may have queued before the oldest is dropped.
DEFAULT_MAX_PENDING = 2

FrameCallback = Callable[["Frame"], Any]

_CLOSED = object()
_ids = itertools.count(1)


class PreviewState(Enum):
    """Producer state of a preview manager."""

    IDLE = "idle"
    PRODUCING = "producing"


class PreviewSubscription:
    """One consumer's view of the preview stream.

    Iterate it with ``async for`` to receive frames in production order, or
    pass ``on_frame`` to PreviewStreamManager.subscribe() to be called
    synchronously instead. Iteration ends when the subscription is cancelled,
    and raises the producer's error if the stream failed.

    Attributes:
        id: Process-unique subscription number.
        delivered: Frames handed to this subscriber.
        dropped: Frames discarded because its queue was full.
    """

    def __init__(
        self,
        manager: PreviewStreamManager,
        max_pending: int,
        on_frame: FrameCallback | None = None,
    ) -> None:
        if max_pending < 1:
            raise ValueError(f"max_pending must be >= 1, got {max_pending}")
        self.id = next(_ids)
        self.delivered = 0
        self.dropped = 0
        self._manager = manager
        self._on_frame = on_frame
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_pending)
        self._active = True
        self._error: BaseException | None = None

    @property
    def active(self) -> bool:
        """False once cancelled or ended by a producer failure."""
        return self._active

    @property
    def error(self) -> BaseException | None:
        """Producer failure that ended this subscription, if any."""
        return self._error

    @property
    def pending(self) -> int:
        """Frames queued and not yet consumed."""
        return 0 if not self._active else self._queue.qsize()

    async def cancel(self) -> None:
        """Unsubscribe. No further frame is delivered after this returns."""
        await self._manager.unsubscribe(self)

    # -------------------------------------------------------------------------
    # Delivery (called by the manager)
    # -------------------------------------------------------------------------

    def _deliver(self, frame: Frame) -> None:
        if not self._active:
            return
        if self._on_frame is not None:
            self._on_frame(frame)
        else:
            if self._queue.full():
                self._queue.get_nowait()
                self.dropped += 1
            self._queue.put_nowait(frame)
        self.delivered += 1

    def _close(self, error: BaseException | None = None) -> None:
        if not self._active:
            return
        self._active = False
        self._error = error
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    # -------------------------------------------------------------------------
    # Async iteration / context manager
    # -------------------------------------------------------------------------

    def __aiter__(self) -> PreviewSubscription:
        return self

    async def __anext__(self) -> Frame:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker so later calls end the same way.
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> PreviewSubscription:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.cancel()

    def __repr__(self) -> str:
        return (
            f"<PreviewSubscription(id={self.id}, active={self._active}, "
            f"delivered={self.delivered}, dropped={self.dropped})>"
        )


class PreviewStreamManager:
    """Single-producer, multi-subscriber preview stream for one strategy.

    State machine: IDLE -> PRODUCING (first subscribe) -> IDLE (last
    unsubscribe, producer failure, or shutdown).

    Business context: The attract screen, the operator tablet and the
    MJPEG endpoint can all watch the live view at once while the camera
    is only asked for one frame per tick.

    Thread Safety:
        Not thread-safe. Use from the event loop that owns the strategy.
    """

    def __init__(
        self,
        strategy: CaptureStrategy,
        *,
        max_pending: int = DEFAULT_MAX_PENDING,
    ) -> None:
        """Create an idle manager for ``strategy``.

        Args:
            strategy: Source of preview frames.
            max_pending: Default per-subscriber queue bound.
        """
        self._strategy = strategy
        self._max_pending = max_pending
        self._subscribers: dict[int, PreviewSubscription] = {}
        self._producer: asyncio.Task[None] | None = None
        self._state = PreviewState.IDLE
        self._frames_produced = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._shut_down = False

    @property
    def strategy(self) -> CaptureStrategy:
        return self._strategy

    @property
    def state(self) -> PreviewState:
        return self._state

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def frames_produced(self) -> int:
        """Frames produced since this manager was created."""
        return self._frames_produced

    def subscribe(
        self,
        max_pending: int | None = None,
        on_frame: FrameCallback | None = None,
    ) -> PreviewSubscription:
        """Add a subscriber, starting the producer if it is the first.

        Must be called from a running event loop.

        Args:
            max_pending: Queue bound for this subscriber. Defaults to the
                manager's.
            on_frame: Called with each frame instead of queueing it. An
                exception from the callback drops this subscriber only.

        Returns:
            The new, active subscription.

        Raises:
            NotInitializedError: If the manager has been shut down.
            ValueError: If max_pending is below 1.

        Example:
            >>> sub = manager.subscribe(max_pending=1)
            >>> frame = await anext(sub)
            >>> await sub.cancel()
        """
        if self._shut_down:
            raise NotInitializedError("preview stream has been shut down")

        sub = PreviewSubscription(
            self,
            max_pending if max_pending is not None else self._max_pending,
            on_frame,
        )
        self._subscribers[sub.id] = sub
        logger.debug(
            "Preview subscriber added",
            subscriber=sub.id,
            subscribers=len(self._subscribers),
        )
        if self._producer is None:
            self._start_producer()
        return sub

    async def unsubscribe(self, sub: PreviewSubscription) -> None:
        """Remove ``sub``; stop the producer when none remain.

        Idempotent. When this returns, ``sub`` will receive nothing more and,
        if it was the last subscriber, no producer task is running.
        """
        removed = self._subscribers.pop(sub.id, None)
        sub._close()
        if removed is None:
            return
        logger.debug(
            "Preview subscriber removed",
            subscriber=sub.id,
            subscribers=len(self._subscribers),
        )
        if not self._subscribers:
            await self._stop_producer()

    async def shutdown(self) -> None:
        """Cancel every subscription and the producer. Further subscribe() fails."""
        self._shut_down = True
        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        for sub in subscribers:
            sub._close()
        await self._stop_producer()
        logger.debug("Preview stream shut down", cancelled=len(subscribers))

    async def wait_idle(self) -> None:
        """Return once no producer is running."""
        await self._idle.wait()

    # -------------------------------------------------------------------------
    # Producer
    # -------------------------------------------------------------------------

    def _start_producer(self) -> None:
        self._state = PreviewState.PRODUCING
        self._idle.clear()
        self._producer = asyncio.create_task(
            self._produce(), name=f"preview-{self._strategy.tag}"
        )
        logger.info("Preview producer started", tag=self._strategy.tag)

    async def _stop_producer(self) -> None:
        task, self._producer = self._producer, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})
        self._mark_idle()

    def _mark_idle(self) -> None:
        if self._producer is None:
            self._state = PreviewState.IDLE
            self._idle.set()

    async def _produce(self) -> None:
        try:
            async with contextlib.aclosing(self._strategy.preview_frames()) as frames:
                async for frame in frames:
                    self._frames_produced += 1
                    self._broadcast(frame)
                    if not self._subscribers:
                        break
        except asyncio.CancelledError:
            logger.info("Preview producer stopped", frames=self._frames_produced)
            raise
        except Exception as exc:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
            logger.error(
                "Preview producer failed",
                error=str(exc),
                subscribers=len(subscribers),
            )
            for sub in subscribers:
                sub._close(exc)
        finally:
            if self._producer is asyncio.current_task():
                self._producer = None
            self._mark_idle()

    def _broadcast(self, frame: Frame) -> None:
        for sub in list(self._subscribers.values()):
            try:
                sub._deliver(frame)
            except Exception as exc:
                self._subscribers.pop(sub.id, None)
                sub._close(exc)
                logger.warning(
                    "Dropping preview subscriber", subscriber=sub.id, error=str(exc)
                )

    def __repr__(self) -> str:
        return (
            f"<PreviewStreamManager(tag={self._strategy.tag!r}, "
            f"state={self._state.value}, subscribers={len(self._subscribers)})>"
        )
