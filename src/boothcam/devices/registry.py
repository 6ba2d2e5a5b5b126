"""Device registry: sole owner of the active capture strategy.

The booth has one camera, so exactly one strategy is active at a time. The
registry hands it out, pairs it with its PreviewStreamManager, and swaps it
for another backend without ever leaving two strategies holding the device:
the outgoing one is fully cleaned up before the incoming one initializes.

Example:
    registry = DeviceRegistry(factory=StrategyFactory(config))
    await registry.swap_strategy("sim")
    result = await registry.get_active().capture_photo()
    await registry.swap_strategy(Backend.GPHOTO2)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from boothcam.devices.preview import PreviewStreamManager
from boothcam.drivers.cameras import CaptureStrategy, DeviceState
from boothcam.drivers.config import Backend, get_factory
from boothcam.errors import CameraError, NotInitializedError, SwapError
from boothcam.observability import CaptureStats, get_logger

if TYPE_CHECKING:
    from boothcam.drivers.config import StrategyFactory

logger = get_logger(__name__)

__all__ = [
    "DeviceRegistry",
    "get_registry",
    "init_registry",
    "shutdown_registry",
]


class DeviceRegistry:
    """Owns the active capture strategy and its preview stream.

    Business context: The operator switches from the simulator to the DSLR
    once it is plugged in, or falls back to a webcam when the DSLR battery
    dies, without restarting the booth. Swaps are refused mid-capture so a
    guest's photo is never lost.

    Thread Safety:
        Not thread-safe. Swaps are serialized by an asyncio.Lock and must
        run on the event loop that owns the strategies.
    """

    def __init__(
        self,
        strategy: CaptureStrategy | None = None,
        factory: StrategyFactory | None = None,
    ) -> None:
        """Create a registry, optionally holding an uninitialized strategy.

        Args:
            strategy: Initial strategy. Call activate() to initialize it.
            factory: Builds strategies when swap_strategy() is given a
                backend name. Defaults to the process-wide factory.
        """
        self._factory = factory
        self._strategy = strategy
        self._preview = PreviewStreamManager(strategy) if strategy else None
        self._stats = getattr(strategy, "stats", None) or CaptureStats()
        self._swap_lock = asyncio.Lock()

    @property
    def factory(self) -> StrategyFactory:
        return self._factory or get_factory()

    @property
    def stats(self) -> CaptureStats:
        """Statistics of the active strategy.

        Strategies built from a backend name share this collector; a strategy
        instance swapped in brings its own, which then replaces it.
        """
        return self._stats

    @property
    def state(self) -> DeviceState:
        """State of the active strategy (UNINITIALIZED when empty)."""
        if self._strategy is None:
            return DeviceState.UNINITIALIZED
        return self._strategy.state

    @property
    def preview(self) -> PreviewStreamManager:
        """Preview manager bound to the active strategy.

        Raises:
            NotInitializedError: If the registry holds no strategy.
        """
        if self._preview is None:
            raise NotInitializedError("no active capture device")
        return self._preview

    def get_active(self) -> CaptureStrategy:
        """Return the active strategy.

        Raises:
            NotInitializedError: If the registry is empty (never populated,
                or the last swap failed).
        """
        if self._strategy is None:
            raise NotInitializedError("no active capture device")
        return self._strategy

    async def activate(self) -> CaptureStrategy:
        """Initialize the held strategy.

        Raises:
            NotInitializedError: If the registry is empty.
            InitError: If the strategy cannot be opened.
        """
        strategy = self.get_active()
        await strategy.initialize()
        return strategy

    async def swap_strategy(
        self, new: CaptureStrategy | Backend | str
    ) -> CaptureStrategy:
        """Replace the active strategy with ``new`` and initialize it.

        Steps, under the swap lock: refuse if the current device is BUSY;
        detach it; shut down its preview stream; clean it up (errors are
        logged, never block the swap); initialize the incoming strategy.

        Business context: Called from the operator console and the
        ``POST /api/backend/{name}`` endpoint. There is no fallback to the
        previous backend: if the new camera fails to open, the booth
        reports "no device" instead of silently shooting with the wrong one.

        Args:
            new: A strategy instance, a Backend, or a backend name/alias
                (``sim``, ``dslr``, ``webcam``...).

        Returns:
            The newly active, READY strategy.

        Raises:
            SwapError: The current device is BUSY (nothing changes), or the
                new strategy failed to initialize (registry left empty).
            ConfigError: ``new`` names no known backend (nothing changes).

        Example:
            >>> await registry.swap_strategy("dslr")
            <GPhoto2CameraStrategy(tag='dslr', state=ready)>
        """
        async with self._swap_lock:
            current = self._strategy
            if current is not None and current.state is DeviceState.BUSY:
                raise SwapError(
                    f"cannot swap while {current.tag} is capturing; retry when idle"
                )

            incoming = self._resolve(new)
            outgoing_tag = current.tag if current is not None else None
            logger.info("Swapping capture strategy", old=outgoing_tag, new=incoming.tag)

            await self._release_current()

            try:
                await incoming.initialize()
            except CameraError as exc:
                logger.error(
                    "New capture strategy failed to initialize",
                    tag=incoming.tag,
                    error=str(exc),
                )
                raise SwapError(f"failed to initialize {incoming.tag}: {exc}") from exc

            self._strategy = incoming
            self._preview = PreviewStreamManager(incoming)
            # Status reports the collector the active device records into.
            self._stats = getattr(incoming, "stats", None) or self._stats
            logger.info("Capture strategy active", tag=incoming.tag)
            return incoming

    async def shutdown(self) -> None:
        """Stop the preview stream and release the active strategy."""
        async with self._swap_lock:
            await self._release_current()

    def _resolve(self, new: CaptureStrategy | Backend | str) -> CaptureStrategy:
        if isinstance(new, Backend | str):
            return self.factory.create_strategy(new, stats=self._stats)
        return new

    async def _release_current(self) -> None:
        strategy, preview = self._strategy, self._preview
        self._strategy = None
        self._preview = None
        if preview is not None:
            await preview.shutdown()
        if strategy is None:
            return
        try:
            await strategy.cleanup()
        except Exception as exc:
            logger.warning(
                "Cleanup of outgoing strategy failed",
                tag=strategy.tag,
                error=str(exc),
            )

    def __repr__(self) -> str:
        tag = self._strategy.tag if self._strategy is not None else None
        return f"<DeviceRegistry(active={tag}, state={self.state.value})>"


# =============================================================================
# Module-level singleton
# =============================================================================

_default_registry: DeviceRegistry | None = None


def init_registry(
    strategy: CaptureStrategy | None = None,
    factory: StrategyFactory | None = None,
) -> DeviceRegistry:
    """Create the process-wide registry, replacing any existing one.

    The previous registry, if any, is not shut down; call
    shutdown_registry() first when replacing a live one.

    Example:
        >>> registry = init_registry(factory=StrategyFactory(config))
        >>> await registry.swap_strategy("sim")
    """
    global _default_registry
    _default_registry = DeviceRegistry(strategy, factory)
    return _default_registry


def get_registry() -> DeviceRegistry:
    """Return the process-wide registry.

    Raises:
        RuntimeError: If init_registry() has not been called.
    """
    if _default_registry is None:
        raise RuntimeError("Registry not initialized. Call init_registry() first.")
    return _default_registry


async def shutdown_registry() -> None:
    """Shut down and forget the process-wide registry. Safe when absent."""
    global _default_registry
    registry, _default_registry = _default_registry, None
    if registry is not None:
        await registry.shutdown()
