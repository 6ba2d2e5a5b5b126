"""HTTP surface: FastAPI app with capture, settings and MJPEG preview routes."""

from boothcam.web.app import create_app, main, run

__all__ = ["create_app", "main", "run"]
