"""CLI entry point for boothcam.

Provides the ``boothcam`` console script with subcommands:

- ``serve`` - Run the HTTP service (capture, settings, MJPEG preview)
- ``capture`` - Take one or more photos and print their metadata as JSON

Every option falls back to its ``BOOTHCAM_*`` environment variable, then to
the built-in default.

Usage::

    # Serve the simulator on port 8080
    boothcam serve --backend sim

    # Serve the DSLR with JSON logs
    boothcam serve --backend dslr --json-logs

    # Take three photos with the webcam
    boothcam capture --backend webcam --count 3 --output-dir ./shots
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from boothcam import __version__
from boothcam.drivers.config import Backend, BoothConfig, StrategyFactory
from boothcam.errors import CameraError, ConfigError
from boothcam.observability import configure_logging, get_logger

logger = get_logger(__name__)

PROG = "boothcam"


def _backend_names() -> list[str]:
    return [backend.value for backend in Backend] + ["sim", "dslr"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Photobooth camera service: capture, settings, live preview",
    )
    parser.add_argument("--version", action="version", version=__version__)
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--backend",
        choices=_backend_names(),
        help="Capture backend (default: BOOTHCAM_BACKEND or simulated)",
    )
    common.add_argument(
        "--output-dir",
        type=Path,
        help="Directory captured photos are written to",
    )
    common.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level (default: INFO)",
    )
    common.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit logs as NDJSON",
    )

    serve = subparsers.add_parser(
        "serve", parents=[common], help="Run the HTTP camera service"
    )
    serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve.add_argument("--port", type=int, default=8080, help="Bind port")
    serve.add_argument(
        "--preview-fps", type=float, help="Live preview frame rate (default: 10)"
    )

    capture = subparsers.add_parser(
        "capture", parents=[common], help="Take photos and exit"
    )
    capture.add_argument(
        "--count", type=int, default=1, help="Number of photos (default: 1)"
    )
    return parser


def _load_config(args: argparse.Namespace) -> BoothConfig:
    """Environment config with CLI flags layered on top."""
    return BoothConfig.from_env().replace(
        backend=args.backend,
        output_dir=args.output_dir,
        preview_fps=getattr(args, "preview_fps", None),
        log_level=args.log_level,
        log_json=args.json_logs,
    )


async def run_capture(config: BoothConfig, count: int) -> list[dict[str, object]]:
    """Open the configured backend, take ``count`` photos, release it.

    Args:
        config: Booth configuration; ``backend`` selects the strategy.
        count: Photos to take, one after another.

    Returns:
        CaptureResult.to_dict() for each photo, in order.

    Raises:
        CameraError: If the device cannot be opened or a capture fails.
            Photos taken before the failure stay on disk.

    Example:
        >>> asyncio.run(run_capture(BoothConfig(backend="sim"), 2))
        [{'path': '.../sim_1792418527123.jpg', ...}, {...}]
    """
    strategy = StrategyFactory(config).create_strategy()
    results: list[dict[str, object]] = []
    await strategy.initialize()
    try:
        for _ in range(count):
            result = await strategy.capture_photo()
            results.append(result.to_dict())
    finally:
        await strategy.cleanup()
    return results


def main(argv: Sequence[str] | None = None) -> int:
    """Main CLI entry point for boothcam.

    Args:
        argv: Arguments without the program name. Defaults to sys.argv[1:].

    Returns:
        Exit code: 0 on success, 1 on a camera failure, 2 on bad
        configuration or usage.

    Raises:
        SystemExit: On --help, --version or argument parsing errors.

    Example:
        >>> main(["capture", "--backend", "sim", "--count", "2"])
        0
    """
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        config = _load_config(args)
        if args.command == "capture" and args.count < 1:
            raise ConfigError(f"--count must be >= 1, got {args.count}")
    except ConfigError as exc:
        print(f"{PROG}: error: {exc}", file=sys.stderr)
        return 2

    configure_logging(
        level=config.log_level, json_format=config.log_json, force=True
    )

    if args.command == "serve":
        from boothcam.web.app import run

        run(config, host=args.host, port=args.port)
        return 0

    try:
        results = asyncio.run(run_capture(config, args.count))
    except CameraError as exc:
        logger.error("Capture failed", backend=config.backend.value, error=str(exc))
        return 1
    for result in results:
        print(json.dumps(result))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
