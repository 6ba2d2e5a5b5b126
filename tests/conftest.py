"""Pytest configuration and fixtures for boothcam tests.

Fixtures here build configurations that keep every file a test writes under
``tmp_path`` and shorten the simulator's acquisition latency so capture
tests finish quickly. No fixture touches real camera hardware; hardware
backends are exercised with mocked subprocesses and mocked VideoCapture
objects in their own test modules.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from boothcam.drivers.cameras import SimulatedCameraStrategy
from boothcam.drivers.config import BoothConfig
from boothcam.observability import reset_logging


@pytest.fixture(autouse=True)
def _fresh_logging() -> Iterator[None]:
    """Drop handlers added by a test so the next one starts unconfigured.

    Business context:
    configure_logging() only takes effect once per process unless forced.
    The CLI and the HTTP lifespan both force it, and their handlers hold a
    reference to whatever stream the test passed in, so they must not leak
    into later tests.
    """
    yield
    reset_logging()


@pytest.fixture
def booth_config(tmp_path: Path) -> BoothConfig:
    """Simulator configuration writing under tmp_path.

    Args:
        tmp_path: pytest temporary directory.

    Returns:
        BoothConfig with output_dir ``tmp_path/captures``, asset_dir
        ``tmp_path/assets``, 50 ms capture latency, 2 s capture timeout and
        10 fps preview.

    Example:
        def test_capture(booth_config):
            strategy = SimulatedCameraStrategy(booth_config)
    """
    return BoothConfig(
        backend="sim",
        output_dir=tmp_path / "captures",
        asset_dir=tmp_path / "assets",
        capture_latency_s=0.05,
        capture_timeout_s=2.0,
        preview_fps=10.0,
    )


@pytest.fixture
def sim_strategy(booth_config: BoothConfig) -> SimulatedCameraStrategy:
    """Uninitialized simulated strategy bound to booth_config.

    Tests call ``await sim_strategy.initialize()`` themselves; async
    fixtures are not used in this suite.
    """
    return SimulatedCameraStrategy(booth_config)
