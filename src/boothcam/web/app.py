"""FastAPI application exposing the booth camera over HTTP."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from boothcam import __version__
from boothcam.devices import (
    DeviceRegistry,
    PreviewSubscription,
    init_registry,
    shutdown_registry,
)
from boothcam.drivers.cameras import DeviceState
from boothcam.drivers.config import BoothConfig, StrategyFactory
from boothcam.errors import (
    CameraError,
    CaptureTimeoutError,
    ConfigError,
    DeviceBusyError,
    NotInitializedError,
    SettingsError,
    SwapError,
)
from boothcam.observability import configure_logging, get_logger

logger = get_logger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080

MJPEG_MEDIA_TYPE = "multipart/x-mixed-replace; boundary=frame"
_MJPEG_PART_HEADER = b"--frame\r\nContent-Type: image/jpeg\r\n\r\n"

# First match wins, so subclasses come before their bases.
_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (NotInitializedError, 503),
    (DeviceBusyError, 409),
    (SettingsError, 400),
    (CaptureTimeoutError, 504),
    (SwapError, 409),
    (ConfigError, 400),
)


def error_status(exc: Exception) -> int:
    """HTTP status for a camera or configuration error (500 if unmapped)."""
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


def _error_response(exc: Exception) -> JSONResponse:
    body: dict[str, Any] = {"error": str(exc), "type": type(exc).__name__}
    if isinstance(exc, SettingsError):
        body["key"] = exc.key
    return JSONResponse(body, status_code=error_status(exc))


def create_app(
    config: BoothConfig | None = None,
    registry: DeviceRegistry | None = None,
) -> FastAPI:
    """Create the booth camera HTTP application.

    The lifespan configures logging, activates the capture device and
    shuts it down on exit. A device that fails to open does not stop the
    server; endpoints answer 503 until a successful backend swap.

    Business context: The booth's kiosk front end, the operator tablet and
    any MJPEG-capable ``<img>`` tag talk to the camera only through these
    routes.

    Args:
        config: Booth configuration. Defaults to BoothConfig.from_env().
        registry: Registry to serve. When omitted a process-wide one is
            created with init_registry() and torn down on shutdown.

    Returns:
        Configured FastAPI application ready for uvicorn.run().

    Raises:
        ConfigError: If config is omitted and the environment is invalid.

    Example:
        >>> app = create_app(BoothConfig(backend="sim"))
        >>> uvicorn.run(app, host="0.0.0.0", port=8080)
    """
    config = config or BoothConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(
            level=config.log_level, json_format=config.log_json, force=True
        )
        logger.info("Starting booth camera service", backend=config.backend.value)

        owns_registry = registry is None
        active = registry or init_registry(factory=StrategyFactory(config))
        app.state.registry = active
        try:
            if active.state is DeviceState.UNINITIALIZED:
                await _bring_up(active, config)
        except CameraError as exc:
            logger.error("Capture device unavailable at startup", error=str(exc))

        yield

        logger.info("Shutting down booth camera service")
        if owns_registry:
            await shutdown_registry()
        else:
            await active.shutdown()

    app = FastAPI(
        title="Booth Camera",
        description="Capture, settings and live preview for the photobooth camera",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(CameraError)
    async def camera_error_handler(request: Request, exc: CameraError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
        return _error_response(exc)

    @app.get("/api/status")
    async def api_status(request: Request) -> dict[str, Any]:
        """Report the active device, its settings and capture statistics.

        Answers 200 even with no active device, so kiosks can poll it
        while the operator swaps cameras.

        Returns:
            {"backend", "state", "settings", "resolution", "preview",
             "stats", ...} plus backend-specific fields from describe().
        """
        active = _registry(request)
        status: dict[str, Any] = {
            "backend": None,
            "state": active.state.value,
            "settings": {},
            "resolution": None,
            "preview": None,
        }
        try:
            strategy = active.get_active()
            preview = active.preview
        except NotInitializedError:
            pass
        else:
            status.update(strategy.describe())
            status.update(
                backend=strategy.tag,
                state=strategy.state.value,
                resolution=list(strategy.resolution),
                preview={
                    "state": preview.state.value,
                    "subscribers": preview.subscriber_count,
                    "frames_produced": preview.frames_produced,
                },
            )
        status["stats"] = active.stats.get_summary().to_dict()
        return status

    @app.post("/api/capture")
    async def api_capture(request: Request) -> dict[str, Any]:
        """Take one photo.

        Returns:
            {"path", "filename", "size_bytes", "timestamp", "width",
             "height", "settings"}. 409 while another capture runs, 504 on
            timeout, 503 with no ready device.

        Example:
            curl -X POST http://booth.local:8080/api/capture
        """
        result = await _registry(request).get_active().capture_photo()
        return result.to_dict()

    @app.post("/api/settings")
    async def api_settings(
        request: Request,
        options: dict[str, Any] = Body(..., description="Setting name to value"),
    ) -> dict[str, Any]:
        """Apply settings atomically; 400 naming the key if any is invalid."""
        settings = await _registry(request).get_active().adjust_settings(options)
        return {"settings": dict(settings)}

    @app.post("/api/backend/{name}")
    async def api_swap_backend(request: Request, name: str) -> dict[str, Any]:
        """Swap to another backend (``sim``, ``dslr``, ``webcam``...).

        409 while a capture is running or when the new device fails to
        open; 400 for an unknown backend name.
        """
        strategy = await _registry(request).swap_strategy(name)
        return strategy.describe()

    @app.get("/api/preview/frame")
    async def api_preview_frame(request: Request) -> Response:
        """Return a single preview JPEG."""
        frame = await _registry(request).get_active().grab_preview_frame()
        return Response(
            content=frame.data,
            media_type="image/jpeg",
            headers={"X-Frame-Sequence": str(frame.sequence)},
        )

    @app.get("/stream/preview")
    async def stream_preview(
        request: Request,
        max_frames: int | None = Query(
            None, ge=1, description="Stop after this many frames"
        ),
    ) -> StreamingResponse:
        """Stream the live preview as MJPEG.

        Each client holds one preview subscription for the lifetime of the
        response; disconnecting cancels it, and the producer stops with the
        last client.

        Example:
            <img src="http://booth.local:8080/stream/preview">
        """
        subscription = _registry(request).preview.subscribe()
        return StreamingResponse(
            _mjpeg_stream(subscription, max_frames),
            media_type=MJPEG_MEDIA_TYPE,
        )

    return app


def _registry(request: Request) -> DeviceRegistry:
    return request.app.state.registry


async def _bring_up(registry: DeviceRegistry, config: BoothConfig) -> None:
    try:
        registry.get_active()
    except NotInitializedError:
        await registry.swap_strategy(config.backend)
    else:
        await registry.activate()


async def _mjpeg_stream(
    subscription: PreviewSubscription, max_frames: int | None = None
) -> AsyncGenerator[bytes, None]:
    """Yield multipart MJPEG parts until the client leaves or the stream ends.

    Yields:
        b"--frame\\r\\nContent-Type: image/jpeg\\r\\n\\r\\n<jpeg>\\r\\n"
    """
    sent = 0
    try:
        async for frame in subscription:
            yield _MJPEG_PART_HEADER + frame.data + b"\r\n"
            sent += 1
            if max_frames is not None and sent >= max_frames:
                break
    except CameraError as exc:
        logger.warning("Preview stream ended by device error", error=str(exc))
    finally:
        await subscription.cancel()
        logger.debug("Preview stream closed", frames=sent)


def run(
    config: BoothConfig | None = None,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> None:
    """Serve the application with uvicorn. Blocks until stopped."""
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


def main() -> None:
    """Run the booth camera server configured from ``BOOTHCAM_*`` variables.

    Example:
        >>> # python -m boothcam.web.app
        >>> main()
    """
    run(BoothConfig.from_env())


if __name__ == "__main__":
    main()
