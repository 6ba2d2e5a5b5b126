"""Tests for DeviceRegistry and the process-wide registry functions.

Test Categories:
    - Activation: empty registry, held strategy, backend names
    - Swap: release-before-promote, busy refusal, failed init, unknown name
    - Singleton: init/get/shutdown lifecycle
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from boothcam.devices import (
    DeviceRegistry,
    PreviewState,
    get_registry,
    init_registry,
    shutdown_registry,
)
from boothcam.drivers.cameras import DeviceState, SimulatedCameraStrategy
from boothcam.drivers.config import Backend, BoothConfig, StrategyFactory
from boothcam.errors import ConfigError, NotInitializedError, SwapError


@pytest.fixture
def factory(booth_config: BoothConfig) -> StrategyFactory:
    """Factory building strategies against booth_config."""
    return StrategyFactory(booth_config)


def _broken_strategy(tmp_path: Path) -> SimulatedCameraStrategy:
    """A simulator whose output directory cannot be created."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    return SimulatedCameraStrategy(
        BoothConfig(output_dir=blocker / "captures", asset_dir=tmp_path / "assets")
    )


# =============================================================================
# Activation
# =============================================================================


class TestActivation:
    """Getting a usable strategy out of the registry."""

    def test_empty_registry(self, factory: StrategyFactory) -> None:
        """No strategy means NotInitializedError, and state reads UNINITIALIZED."""
        registry = DeviceRegistry(factory=factory)

        assert registry.state is DeviceState.UNINITIALIZED
        with pytest.raises(NotInitializedError):
            registry.get_active()
        with pytest.raises(NotInitializedError):
            _ = registry.preview

    @pytest.mark.asyncio
    async def test_activate_held_strategy(
        self, sim_strategy: SimulatedCameraStrategy
    ) -> None:
        """activate() initializes the strategy passed to the constructor."""
        registry = DeviceRegistry(sim_strategy)
        try:
            active = await registry.activate()
            assert active is sim_strategy
            assert registry.state is DeviceState.READY
            assert registry.preview.strategy is sim_strategy
            assert registry.stats is sim_strategy.stats
        finally:
            await registry.shutdown()

        assert sim_strategy.state is DeviceState.CLOSED

    @pytest.mark.asyncio
    async def test_swap_by_backend_name(self, factory: StrategyFactory) -> None:
        """Aliases resolve through the factory and share the registry's stats."""
        registry = DeviceRegistry(factory=factory)
        try:
            active = await registry.swap_strategy("sim")
            assert isinstance(active, SimulatedCameraStrategy)
            assert active.state is DeviceState.READY
            assert registry.get_active() is active
            assert active.stats is registry.stats

            await active.capture_photo()
            assert registry.stats.get_summary().successful_captures == 1
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_swapped_instance_stats_are_reported(
        self, factory: StrategyFactory, booth_config: BoothConfig
    ) -> None:
        """After swapping in an instance, registry.stats is that instance's."""
        registry = DeviceRegistry(factory=factory)
        incoming = SimulatedCameraStrategy(booth_config)
        try:
            await registry.swap_strategy("sim")
            await registry.swap_strategy(incoming)
            await incoming.capture_photo()

            assert registry.stats is incoming.stats
            assert registry.stats.get_summary().successful_captures == 1
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_swap_by_backend_enum(self, factory: StrategyFactory) -> None:
        """Backend members work as well as names."""
        registry = DeviceRegistry(factory=factory)
        try:
            active = await registry.swap_strategy(Backend.SIMULATED)
            assert active.tag == "sim"
        finally:
            await registry.shutdown()


# =============================================================================
# Swap
# =============================================================================


class TestSwap:
    """swap_strategy() never leaves two devices open."""

    @pytest.mark.asyncio
    async def test_old_strategy_closed_before_new_initializes(
        self,
        factory: StrategyFactory,
        booth_config: BoothConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """The outgoing device is CLOSED by the time the new one opens."""
        registry = DeviceRegistry(factory=factory)
        old = await registry.swap_strategy("sim")
        new = SimulatedCameraStrategy(booth_config)

        observed: list[DeviceState] = []
        original_initialize = new.initialize

        async def spy() -> None:
            observed.append(old.state)
            await original_initialize()

        monkeypatch.setattr(new, "initialize", spy)
        try:
            assert await registry.swap_strategy(new) is new
        finally:
            await registry.shutdown()

        assert observed == [DeviceState.CLOSED]
        assert old.state is DeviceState.CLOSED

    @pytest.mark.asyncio
    async def test_swap_replaces_preview_manager(
        self, factory: StrategyFactory, booth_config: BoothConfig
    ) -> None:
        """Subscribers of the old device are ended; the new preview is idle."""
        registry = DeviceRegistry(factory=factory)
        try:
            await registry.swap_strategy("sim")
            old_preview = registry.preview
            sub = old_preview.subscribe()
            await anext(sub)

            await registry.swap_strategy(SimulatedCameraStrategy(booth_config))

            assert sub.active is False
            assert old_preview.state is PreviewState.IDLE
            assert registry.preview is not old_preview
            assert registry.preview.state is PreviewState.IDLE
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_swap_refused_while_busy(
        self, factory: StrategyFactory, booth_config: BoothConfig
    ) -> None:
        """A capture in progress blocks the swap and is left untouched.

        Business context: Swapping mid-capture would lose the photo the
        guest is posing for.
        """
        registry = DeviceRegistry(
            factory=StrategyFactory(booth_config.replace(capture_latency_s=0.3))
        )
        try:
            current = await registry.swap_strategy("sim")
            capture = asyncio.create_task(current.capture_photo())
            await asyncio.sleep(0.05)

            with pytest.raises(SwapError, match="capturing"):
                await registry.swap_strategy("sim")

            assert registry.get_active() is current
            assert current.state is DeviceState.BUSY
            result = await capture
            assert result.path.exists()
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_failed_initialize_leaves_registry_empty(
        self, factory: StrategyFactory, tmp_path: Path
    ) -> None:
        """No fallback: the old device is released and nothing replaces it."""
        registry = DeviceRegistry(factory=factory)
        old = await registry.swap_strategy("sim")

        with pytest.raises(SwapError, match="failed to initialize"):
            await registry.swap_strategy(_broken_strategy(tmp_path))

        assert old.state is DeviceState.CLOSED
        assert registry.state is DeviceState.UNINITIALIZED
        with pytest.raises(NotInitializedError):
            registry.get_active()

        recovered = await registry.swap_strategy("sim")
        assert recovered.state is DeviceState.READY
        await registry.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_backend_changes_nothing(
        self, factory: StrategyFactory
    ) -> None:
        """ConfigError is raised before the current device is touched."""
        registry = DeviceRegistry(factory=factory)
        try:
            current = await registry.swap_strategy("sim")
            with pytest.raises(ConfigError, match="Unknown backend"):
                await registry.swap_strategy("polaroid")
            assert registry.get_active() is current
            assert current.state is DeviceState.READY
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_block_swap(
        self, factory: StrategyFactory, booth_config: BoothConfig
    ) -> None:
        """A device that fails to release is logged and replaced anyway."""
        registry = DeviceRegistry(factory=factory)
        try:
            old = await registry.swap_strategy("sim")
            old.cleanup = AsyncMock(side_effect=RuntimeError("usb stalled"))

            new = await registry.swap_strategy(SimulatedCameraStrategy(booth_config))

            old.cleanup.assert_awaited_once()
            assert registry.get_active() is new
        finally:
            await registry.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_repeatable(self, factory: StrategyFactory) -> None:
        """Shutting down an empty registry is a no-op."""
        registry = DeviceRegistry(factory=factory)
        await registry.swap_strategy("sim")
        await registry.shutdown()
        await registry.shutdown()
        assert registry.state is DeviceState.UNINITIALIZED


# =============================================================================
# Singleton
# =============================================================================


class TestRegistrySingleton:
    """init_registry / get_registry / shutdown_registry."""

    @pytest.fixture(autouse=True)
    def _no_global_registry(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("boothcam.devices.registry._default_registry", None)

    def test_get_before_init(self) -> None:
        """Using the registry before init_registry() is a programming error."""
        with pytest.raises(RuntimeError, match="init_registry"):
            get_registry()

    @pytest.mark.asyncio
    async def test_init_get_shutdown(self, factory: StrategyFactory) -> None:
        """The same registry is returned until it is shut down."""
        registry = init_registry(factory=factory)
        assert get_registry() is registry
        active = await registry.swap_strategy("sim")

        await shutdown_registry()

        assert active.state is DeviceState.CLOSED
        with pytest.raises(RuntimeError):
            get_registry()
        await shutdown_registry()

    def test_repr(self, factory: StrategyFactory) -> None:
        """repr shows the active tag and state."""
        registry = init_registry(factory=factory)
        assert repr(registry) == "<DeviceRegistry(active=None, state=uninitialized)>"
