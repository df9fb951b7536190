"""
Frame Data Model
=================

Internal frame representation shared by the buffer and the frame server.

Design Rules:
    - A Frame is one complete JPEG image, carried as opaque bytes
    - Does NOT decode or inspect the image data
    - Every stored frame is a new object, so identity means "same frame"
"""

from dataclasses import dataclass


@dataclass(frozen=True, slots=True, eq=False)
class Frame:
    """
    One JPEG-encoded image held by a FrameBuffer.

    It is immutable (frozen) and compared by identity, not by content:
    two frames with accidentally identical bytes are still two frames.

    Attributes:
        frame_id: Monotonically increasing counter assigned by the buffer
        timestamp: UNIX timestamp when the frame was stored
        data: JPEG bytes (NOT decoded)
    """

    frame_id: int
    timestamp: float
    data: bytes

    @property
    def size(self) -> int:
        """Payload length in bytes."""
        return len(self.data)

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the full image."""
        return (
            f"Frame(frame_id={self.frame_id}, "
            f"timestamp={self.timestamp:.3f}, "
            f"size={len(self.data)})"
        )
