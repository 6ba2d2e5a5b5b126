"""Tests for the gphoto2 DSLR strategy.

No camera is needed: asyncio.create_subprocess_exec is replaced by a fake
gphoto2 that answers each sub-command the way the real tool does (an
auto-detect table, a downloaded file, preview bytes on stdout).

Test Categories:
    - Output parsing: auto-detect table, JPEG extraction
    - Open: detection, port selection, missing binary
    - Capture: published file, native resolution, lazy settings push,
      command failures, timeout kills the process
    - Preview: JPEG extraction and resize
    - Close: camera reset
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from boothcam.drivers.cameras import (
    CaptureStrategy,
    DeviceState,
    GPhoto2CameraStrategy,
)
from boothcam.drivers.cameras.gphoto2 import extract_jpeg, parse_auto_detect
from boothcam.drivers.config import BoothConfig
from boothcam.errors import CaptureError, CaptureTimeoutError, InitError
from boothcam.utils.image import decode_frame
from tests.helpers import FakeProcess, assert_implements_protocol, make_jpeg

AUTO_DETECT = (
    "Model                          Port\n"
    "----------------------------------------------------------\n"
    "Canon EOS 5D Mark III          usb:001,004\n"
    "Nikon DSC D750                 usb:001,007\n"
)


class FakeGPhoto2:
    """Callable replacing asyncio.create_subprocess_exec.

    Attributes:
        calls: Arguments of every invocation, binary name stripped.
        processes: FakeProcess objects handed out, in order.
        fail: Sub-command -> (returncode, stderr) to fail with.
        delay: Sub-command -> seconds communicate() takes.
        write_file: Whether a capture writes its --filename target.
    """

    def __init__(self) -> None:
        self.detect_output = AUTO_DETECT
        self.capture_jpeg = make_jpeg(600, 400)
        self.preview_output = b"garbage" + make_jpeg(320, 240) + b"trailer"
        self.calls: list[list[str]] = []
        self.processes: list[FakeProcess] = []
        self.fail: dict[str, tuple[int, bytes]] = {}
        self.delay: dict[str, float] = {}
        self.write_file = True

    async def __call__(self, *cmd: str, **kwargs: Any) -> FakeProcess:
        args = list(cmd[1:])
        self.calls.append(args)
        op = args[0]

        if op in self.fail:
            returncode, stderr = self.fail[op]
            process = FakeProcess(cmd, stderr=stderr, returncode=returncode)
        else:
            stdout = b""
            on_run = None
            if op == "--auto-detect":
                stdout = self.detect_output.encode()
            elif op == "--capture-preview":
                stdout = self.preview_output
            elif op == "--capture-image-and-download" and self.write_file:
                on_run = self._write_download
            process = FakeProcess(
                cmd, stdout=stdout, on_run=on_run, delay=self.delay.get(op, 0.0)
            )
        self.processes.append(process)
        return process

    def _write_download(self, args: Sequence[str]) -> None:
        target = Path(args[list(args).index("--filename") + 1])
        target.write_bytes(self.capture_jpeg)

    def ops(self) -> list[str]:
        return [call[0] for call in self.calls]

    def set_config_entries(self) -> list[list[str]]:
        """The key=value entries of each --set-config invocation."""
        return [
            [arg for arg in call if "=" in arg and arg != "capturetarget=1"]
            for call in self.calls
            if call[0] == "--set-config" and "capturetarget=1" not in call
        ]


@pytest.fixture
def fake_gphoto2() -> Iterator[FakeGPhoto2]:
    """Route every gphoto2 subprocess to a FakeGPhoto2."""
    fake = FakeGPhoto2()
    with patch(
        "boothcam.drivers.cameras.gphoto2.asyncio.create_subprocess_exec", new=fake
    ):
        yield fake


@pytest.fixture
def dslr(booth_config: BoothConfig) -> GPhoto2CameraStrategy:
    """Uninitialized gphoto2 strategy writing under tmp_path."""
    return GPhoto2CameraStrategy(booth_config.replace(backend="dslr"))


# =============================================================================
# Output parsing
# =============================================================================


class TestParseAutoDetect:
    """parse_auto_detect() reads gphoto2's camera table."""

    def test_parses_models_and_ports(self) -> None:
        """Header and separator lines are skipped; model names keep spaces."""
        assert parse_auto_detect(AUTO_DETECT) == [
            ("Canon EOS 5D Mark III", "usb:001,004"),
            ("Nikon DSC D750", "usb:001,007"),
        ]

    def test_no_cameras(self) -> None:
        """Only the header means nothing was detected."""
        assert parse_auto_detect("Model    Port\n--------------\n") == []

    def test_network_camera(self) -> None:
        """PTP/IP ports are recognised too."""
        output = "Sony Alpha 7  ptpip:192.168.1.20\n"
        assert parse_auto_detect(output) == [("Sony Alpha 7", "ptpip:192.168.1.20")]


class TestExtractJpeg:
    """extract_jpeg() finds the JPEG inside noisy stdout."""

    def test_strips_surrounding_bytes(self) -> None:
        """Leading and trailing bytes are removed."""
        jpeg = make_jpeg(16, 16)
        assert extract_jpeg(b"Saving file\n" + jpeg + b"\nDone") == jpeg

    def test_missing_start_marker(self) -> None:
        """No SOI marker returns None."""
        assert extract_jpeg(b"no image here") is None

    def test_truncated_frame(self) -> None:
        """No EOI marker after SOI returns None."""
        assert extract_jpeg(b"\xff\xd8\x00\x01\x02") is None


# =============================================================================
# Open
# =============================================================================


class TestOpen:
    """initialize() detects the camera and selects its port."""

    @pytest.mark.asyncio
    async def test_initialize_uses_first_detected_camera(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """Model and port come from the first row of auto-detect."""
        await dslr.initialize()
        try:
            assert dslr.state is DeviceState.READY
            assert dslr.model == "Canon EOS 5D Mark III"
            assert dslr.port == "usb:001,004"
            info = dslr.describe()
            assert info["model"] == "Canon EOS 5D Mark III"
            assert info["tag"] == "dslr"
        finally:
            await dslr.cleanup()

        assert fake_gphoto2.calls[0] == ["--auto-detect"]
        assert fake_gphoto2.calls[1] == [
            "--set-config",
            "capturetarget=1",
            "--port",
            "usb:001,004",
        ]

    def test_implements_capture_strategy(self, dslr: GPhoto2CameraStrategy) -> None:
        """Protocol check needs no hardware."""
        assert_implements_protocol(dslr, CaptureStrategy)

    @pytest.mark.asyncio
    async def test_configured_port_selects_camera(
        self, booth_config: BoothConfig, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """gphoto2_port picks a specific camera when several are attached."""
        strategy = GPhoto2CameraStrategy(
            booth_config.replace(gphoto2_port="usb:001,007")
        )
        await strategy.initialize()
        try:
            assert strategy.model == "Nikon DSC D750"
            assert strategy.port == "usb:001,007"
        finally:
            await strategy.cleanup()

    @pytest.mark.asyncio
    async def test_configured_port_not_detected(
        self, booth_config: BoothConfig, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """A port nobody answers on fails initialization."""
        strategy = GPhoto2CameraStrategy(
            booth_config.replace(gphoto2_port="usb:002,001")
        )
        with pytest.raises(InitError, match="usb:002,001"):
            await strategy.initialize()
        assert strategy.state is DeviceState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_no_camera_detected(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """Empty auto-detect table raises InitError."""
        fake_gphoto2.detect_output = "Model    Port\n------------\n"

        with pytest.raises(InitError, match="no gphoto2 compatible camera"):
            await dslr.initialize()

        assert dslr.state is DeviceState.UNINITIALIZED
        assert dslr.port is None

    @pytest.mark.asyncio
    async def test_missing_binary(self, dslr: GPhoto2CameraStrategy) -> None:
        """gphoto2 not installed surfaces as InitError."""
        with patch(
            "boothcam.drivers.cameras.gphoto2.asyncio.create_subprocess_exec",
            side_effect=FileNotFoundError("gphoto2"),
        ):
            with pytest.raises(InitError, match="cannot run gphoto2"):
                await dslr.initialize()

    @pytest.mark.asyncio
    async def test_capture_target_failure_is_tolerated(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """Cameras without a capturetarget option still open."""
        fake_gphoto2.fail["--set-config"] = (1, b"*** Error: unknown config")
        await dslr.initialize()
        try:
            assert dslr.state is DeviceState.READY
        finally:
            fake_gphoto2.fail.clear()
            await dslr.cleanup()


# =============================================================================
# Capture
# =============================================================================


class TestCapture:
    """capture_photo() downloads the camera's file."""

    @pytest.mark.asyncio
    async def test_capture_publishes_downloaded_file(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """The camera's JPEG is published byte for byte as dslr_<millis>.jpg."""
        await dslr.initialize()
        try:
            result = await dslr.capture_photo()
        finally:
            await dslr.cleanup()

        assert re.fullmatch(r"dslr_\d{13}\.jpg", result.path.name)
        assert result.path.read_bytes() == fake_gphoto2.capture_jpeg
        assert (result.width, result.height) == (600, 400)
        assert dslr.resolution == (600, 400)
        assert [p.name for p in dslr.output_dir.iterdir()] == [result.path.name]

        capture_call = next(
            c for c in fake_gphoto2.calls if c[0] == "--capture-image-and-download"
        )
        assert "--force-overwrite" in capture_call
        assert capture_call[-2:] == ["--port", "usb:001,004"]

    @pytest.mark.asyncio
    async def test_settings_pushed_lazily_and_only_when_changed(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """adjust_settings() sends nothing; the next capture sends the diff.

        Business context: Each gphoto2 call costs hundreds of milliseconds
        on a real body, so unchanged settings are not re-sent.
        """
        await dslr.initialize()
        try:
            await dslr.capture_photo()
            first_push = fake_gphoto2.set_config_entries()
            assert len(first_push) == 1
            assert "iso=200" in first_push[0]
            assert "aperture=5.6" in first_push[0]
            assert "focusmode=AF-S" in first_push[0]
            assert "imageformat=JPEG Fine" in first_push[0]
            assert "whitebalance=Automatic" in first_push[0]

            calls_before = len(fake_gphoto2.calls)
            await dslr.adjust_settings(
                {"iso": 800, "aperture": "f/2.8", "focus_mode": "manual"}
            )
            assert len(fake_gphoto2.calls) == calls_before

            result = await dslr.capture_photo()
            second_push = fake_gphoto2.set_config_entries()[1]
            assert sorted(second_push) == [
                "aperture=2.8",
                "focusmode=MF",
                "iso=800",
            ]
            assert result.settings["iso"] == 800

            await dslr.capture_photo()
            assert len(fake_gphoto2.set_config_entries()) == 2
        finally:
            await dslr.cleanup()

    @pytest.mark.asyncio
    async def test_rejected_settings_fail_capture(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """A camera refusing a value fails the capture, not the device."""
        await dslr.initialize()
        fake_gphoto2.fail["--set-config"] = (1, b"*** Error: bad value")
        try:
            with pytest.raises(CaptureError, match="camera rejected settings"):
                await dslr.capture_photo()
            assert dslr.state is DeviceState.READY
        finally:
            fake_gphoto2.fail.clear()
            await dslr.cleanup()

    @pytest.mark.asyncio
    async def test_capture_command_failure(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """Non-zero exit raises CaptureError carrying gphoto2's stderr."""
        await dslr.initialize()
        fake_gphoto2.fail["--capture-image-and-download"] = (
            1,
            b"*** Error: Out of Focus",
        )
        try:
            with pytest.raises(CaptureError, match="Out of Focus"):
                await dslr.capture_photo()
            assert dslr.state is DeviceState.READY
            assert list(dslr.output_dir.iterdir()) == []
        finally:
            await dslr.cleanup()

    @pytest.mark.asyncio
    async def test_success_without_file(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """gphoto2 exiting 0 without downloading is still a failure."""
        fake_gphoto2.write_file = False
        await dslr.initialize()
        try:
            with pytest.raises(CaptureError, match="no file was created"):
                await dslr.capture_photo()
        finally:
            await dslr.cleanup()

    @pytest.mark.asyncio
    async def test_timeout_kills_gphoto2_and_discards_download(
        self, booth_config: BoothConfig, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """A hung camera is killed and no partial file remains."""
        strategy = GPhoto2CameraStrategy(booth_config.replace(capture_timeout_s=0.1))
        fake_gphoto2.delay["--capture-image-and-download"] = 5.0
        await strategy.initialize()
        try:
            with pytest.raises(CaptureTimeoutError):
                await strategy.capture_photo()

            capture_process = next(
                p
                for p in fake_gphoto2.processes
                if p.args[1] == "--capture-image-and-download"
            )
            assert capture_process.killed
            assert list(strategy.output_dir.iterdir()) == []
            assert strategy.state is DeviceState.READY
        finally:
            await strategy.cleanup()


# =============================================================================
# Preview
# =============================================================================


class TestPreview:
    """Preview frames come from --capture-preview --stdout."""

    @pytest.mark.asyncio
    async def test_preview_frame_scaled_to_preview_resolution(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """Camera live view is 320x240 here; frames come out 640x480."""
        await dslr.initialize()
        try:
            frame = await dslr.grab_preview_frame()
        finally:
            await dslr.cleanup()

        assert frame.resolution == (640, 480)
        assert decode_frame(frame.data).shape == (480, 640, 3)
        assert frame.sequence == 1
        assert ["--capture-preview", "--stdout"] == fake_gphoto2.calls[2][:2]

    @pytest.mark.asyncio
    async def test_preview_at_native_size_passes_through(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """No re-encode when the camera already sends 640x480."""
        jpeg = make_jpeg(640, 480)
        fake_gphoto2.preview_output = jpeg
        await dslr.initialize()
        try:
            frame = await dslr.grab_preview_frame()
        finally:
            await dslr.cleanup()

        assert frame.data == jpeg

    @pytest.mark.asyncio
    async def test_preview_without_jpeg(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """stdout with no image raises CaptureError."""
        fake_gphoto2.preview_output = b"*** Error: live view unsupported"
        await dslr.initialize()
        try:
            with pytest.raises(CaptureError, match="no JPEG frame"):
                await dslr.grab_preview_frame()
        finally:
            await dslr.cleanup()


# =============================================================================
# Close
# =============================================================================


class TestClose:
    """cleanup() resets the camera once."""

    @pytest.mark.asyncio
    async def test_cleanup_resets_camera(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """--reset runs on the camera's port and the port is forgotten."""
        await dslr.initialize()
        await dslr.cleanup()
        await dslr.cleanup()

        assert fake_gphoto2.ops().count("--reset") == 1
        assert fake_gphoto2.calls[-1] == ["--reset", "--port", "usb:001,004"]
        assert dslr.port is None
        assert dslr.state is DeviceState.CLOSED

    @pytest.mark.asyncio
    async def test_cleanup_never_opened(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """Nothing is run for a camera that was never detected."""
        await dslr.cleanup()
        assert fake_gphoto2.calls == []

    @pytest.mark.asyncio
    async def test_reset_failure_propagates_after_closing(
        self, dslr: GPhoto2CameraStrategy, fake_gphoto2: FakeGPhoto2
    ) -> None:
        """A failing reset is reported, but the device is CLOSED anyway."""
        await dslr.initialize()
        fake_gphoto2.fail["--reset"] = (1, b"*** Error: I/O in progress")

        with pytest.raises(CaptureError):
            await dslr.cleanup()

        assert dslr.state is DeviceState.CLOSED
        assert dslr.port is None
