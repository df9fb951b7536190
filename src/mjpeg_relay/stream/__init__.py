"""
Stream Module
=============

MJPEG ingestion and frame buffering components.

This module provides the client side of mjpeg_relay:
    - Frame: Immutable JPEG payload held by a FrameBuffer
    - FrameBuffer: Latest-frame-wins cell with condition-based waiting
    - MJPEGStreamReader: HTTP client parsing a multipart MJPEG stream,
      with timeouts, give-up detection and reconnection

Example:
    from mjpeg_relay.stream import FrameBuffer, MJPEGStreamReader

    # Pass-through: every received frame replaces the buffered one
    buffer = FrameBuffer()
    reader = MJPEGStreamReader(
        url="http://camera.local:8080/video",
        sink=buffer.put,
    )

    reader.start()
    frame = await buffer.wait_for_frame()
"""

from mjpeg_relay.stream.frame import Frame
from mjpeg_relay.stream.buffer import FrameBuffer
from mjpeg_relay.stream.reader import (
    ConfigurationError,
    MJPEGStreamReader,
    ReaderMetrics,
    ReaderState,
)


__all__ = [
    "ConfigurationError",
    "Frame",
    "FrameBuffer",
    "MJPEGStreamReader",
    "ReaderMetrics",
    "ReaderState",
]
