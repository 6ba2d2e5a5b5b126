"""Test helpers for boothcam.

Protocol compliance checks plus small builders shared by the backend tests.

Example:
    from tests.helpers import assert_implements_protocol
    from boothcam.drivers.cameras import CaptureStrategy

    def test_my_strategy_implements_protocol():
        assert_implements_protocol(MyStrategy(), CaptureStrategy)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import numpy as np

from boothcam.utils.image import encode_image


def assert_implements_protocol(instance: object, protocol: type[Protocol]) -> None:
    """Assert that an instance implements a runtime-checkable Protocol.

    Business context: Every capture backend is handed to the registry, the
    preview manager and the HTTP layer as a CaptureStrategy. A backend that
    forgets a member fails here rather than on the booth floor.

    Args:
        instance: Object to check.
        protocol: Protocol decorated with @runtime_checkable.

    Raises:
        AssertionError: Listing the members the instance lacks.

    Example:
        >>> assert_implements_protocol(SimulatedCameraStrategy(), CaptureStrategy)
    """
    if isinstance(instance, protocol):
        return

    object_attrs = set(dir(object))
    expected = {
        attr
        for attr in set(dir(protocol)) - object_attrs
        if not attr.startswith("_")
    }
    missing = sorted(attr for attr in expected if not hasattr(instance, attr))
    raise AssertionError(
        f"{type(instance).__name__} does not implement {protocol.__name__}. "
        f"Missing: {', '.join(missing) or 'unknown'}"
    )


def assert_all_implement_protocol(
    instances: Sequence[Any], protocol: type[Protocol]
) -> None:
    """Assert every instance implements ``protocol``, naming the first failure."""
    for i, instance in enumerate(instances):
        try:
            assert_implements_protocol(instance, protocol)
        except AssertionError as e:
            raise AssertionError(f"Instance at index {i}: {e}") from e


def make_jpeg(
    width: int, height: int, bgr: tuple[int, int, int] = (0, 0, 255)
) -> bytes:
    """Encode a solid-colour BGR image of the given size as JPEG bytes."""
    img = np.empty((height, width, 3), dtype=np.uint8)
    img[:] = bgr
    return encode_image(img, 90)


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process.

    Attributes:
        args: Command line it was "started" with.
        returncode: Exit status reported after communicate().
        killed: True once kill() has been called.
    """

    def __init__(
        self,
        args: Sequence[str],
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int = 0,
        delay: float = 0.0,
        on_run: Callable[[Sequence[str]], None] | None = None,
    ) -> None:
        self.args = list(args)
        self._stdout = stdout
        self._stderr = stderr
        self._final_returncode = returncode
        self._delay = delay
        self._on_run = on_run
        self.returncode: int | None = None
        self.killed = False

    async def communicate(self) -> tuple[bytes, bytes]:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._on_run is not None:
            self._on_run(self.args)
        self.returncode = self._final_returncode
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        return self.returncode if self.returncode is not None else -9
