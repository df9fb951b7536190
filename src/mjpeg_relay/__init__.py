"""
mjpeg_relay
===========

MJPEG (multipart/x-mixed-replace) stream reader and frame server.

This package reads live JPEG-over-HTTP streams from remote cameras and
re-serves a frame buffer to any number of HTTP clients.

Components:
    - stream: frame buffer, part protocol and the MJPEG stream reader
    - server: FastAPI/uvicorn frame server
    - sources: remote camera and local webcam video sources
    - orchestrator: feeds a local source into the frame server
    - events: notification hooks

Example:
    from mjpeg_relay.stream import FrameBuffer, MJPEGStreamReader
    from mjpeg_relay.server import MJPEGFrameServer

    buffer = FrameBuffer()
    reader = MJPEGStreamReader("http://camera.local/video", sink=buffer.put)
    server = MJPEGFrameServer(buffer, port=0)

    port = await server.start()
    reader.start()
"""

__version__ = "0.1.0"

__all__ = [
    "__version__",
]
