"""
Server Module
=============

HTTP side of mjpeg_relay: serves a FrameBuffer as MJPEG.

    - MJPEGFrameServer: listener lifecycle (ephemeral port, grace period)
    - create_app: FastAPI application with the catch-all frame route
    - ServerBindError: raised when the port cannot be bound
"""

from mjpeg_relay.server.app import ServerMetrics, create_app
from mjpeg_relay.server.frame_server import (
    MJPEGFrameServer,
    ServerBindError,
    find_free_port,
)


__all__ = [
    "MJPEGFrameServer",
    "ServerBindError",
    "ServerMetrics",
    "create_app",
    "find_free_port",
]
