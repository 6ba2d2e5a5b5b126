"""boothcam: camera hardware-abstraction layer for an event photobooth.

Packages:
    drivers: capture strategies (simulated, gphoto2, webcam) and config
    devices: preview stream manager and device registry
    observability: structured logging and capture statistics
    web: FastAPI surface (capture, settings, MJPEG preview)
"""

__version__ = "0.1.0"
