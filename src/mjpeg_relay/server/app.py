"""
Frame Server Application
========================

FastAPI application that serves the contents of a FrameBuffer.

Endpoints:
    GET /{any path} - current frame, either as a single JPEG
                      (single-frame mode) or as an endless
                      multipart/x-mixed-replace stream

Design Rules:
    - Every connection is an independent task, none waits on another
    - Connections only read the buffer, never write it
    - New frames are detected by identity, slow clients skip frames
    - A cleared buffer ends the stream, a closed buffer refuses requests
"""

import logging
from email.utils import formatdate
from typing import AsyncIterator, TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import Response, StreamingResponse

from mjpeg_relay.stream.buffer import FrameBuffer
from mjpeg_relay.stream.frame import Frame
from mjpeg_relay.stream.protocol import (
    JPEG_CONTENT_TYPE,
    MULTIPART_CONTENT_TYPE,
    encode_part,
)

if TYPE_CHECKING:
    from mjpeg_relay.server.frame_server import MJPEGFrameServer


logger = logging.getLogger(__name__)


NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class ServerMetrics:
    """Metrics for MJPEGFrameServer observability."""

    __slots__ = (
        "requests",
        "rejected",
        "single_frames_sent",
        "streams_opened",
        "active_streams",
        "parts_sent",
    )

    def __init__(self) -> None:
        self.requests: int = 0
        self.rejected: int = 0
        self.single_frames_sent: int = 0
        self.streams_opened: int = 0
        self.active_streams: int = 0
        self.parts_sent: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "requests": self.requests,
            "rejected": self.rejected,
            "single_frames_sent": self.single_frames_sent,
            "streams_opened": self.streams_opened,
            "active_streams": self.active_streams,
            "parts_sent": self.parts_sent,
        }


def single_frame_response(frame: Frame) -> Response:
    """
    Build the response for single-frame mode.

    Date and Last-Modified both carry the current time so clients
    polling the URL never reuse a cached image.
    """
    now = formatdate(usegmt=True)
    return Response(
        content=frame.data,
        media_type=JPEG_CONTENT_TYPE,
        headers={
            "Date": now,
            "Last-Modified": now,
            **NO_CACHE_HEADERS,
        },
    )


async def multipart_stream(
    buffer: FrameBuffer,
    first: Frame,
    metrics: ServerMetrics,
) -> AsyncIterator[bytes]:
    """
    Yield one multipart part per new frame until the buffer is cleared.

    Args:
        buffer: Frame buffer to follow
        first: Frame to send first (the latest one at connect time)
        metrics: Counters to update
    """
    metrics.streams_opened += 1
    metrics.active_streams += 1
    frame = first
    try:
        while frame is not None:
            yield encode_part(frame.data)
            metrics.parts_sent += 1
            frame = await buffer.wait_for_change(frame)
    finally:
        metrics.active_streams -= 1
        logger.info("Streaming stopped")


def create_app(server: "MJPEGFrameServer") -> FastAPI:
    """
    Build the FastAPI application for a frame server.

    Args:
        server: Owning frame server (buffer, mode and metrics)

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="mjpeg-relay",
        description="MJPEG frame server",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.frame_server = server

    @app.get("/{path:path}")
    async def serve_frame(request: Request, path: str) -> Response:
        """Serve the current frame, as a still or as a stream."""
        frame_server: "MJPEGFrameServer" = request.app.state.frame_server
        metrics = frame_server.metrics
        metrics.requests += 1

        client = request.client.host if request.client else "unknown"
        logger.info(f"Request from {client} for /{path}")

        # Wait until a frame is available, or the server stops
        frame = await frame_server.buffer.wait_for_frame()
        if frame is None:
            metrics.rejected += 1
            logger.debug("Frame server stopped before a frame was available")
            return Response(status_code=503)

        if frame_server.single_frame:
            metrics.single_frames_sent += 1
            return single_frame_response(frame)

        return StreamingResponse(
            multipart_stream(frame_server.buffer, frame, metrics),
            media_type=MULTIPART_CONTENT_TYPE,
            headers=NO_CACHE_HEADERS,
        )

    return app
