"""
Frame Buffer
=============

Latest-frame-wins cell shared between one producer and many readers.

This module provides the FrameBuffer class, which sits between whatever
produces JPEG frames (stream reader or local encoder) and the frame
server connections that stream them out.

Design Rules:
    - Holds zero or one frame; a new frame replaces the previous one
    - The stored reference is swapped, never mutated in place
    - Readers wait on a condition, never by spinning
    - Slow readers skip intermediate frames
    - Does NOT process or modify frames
"""

import asyncio
import logging
import time
from typing import Optional

from mjpeg_relay.stream.frame import Frame


logger = logging.getLogger(__name__)


class FrameBuffer:
    """
    Async-safe single-slot frame holder.

    All writes and waits go through one asyncio.Condition. Readers
    compare frames by identity to detect a new one.

    Lifecycle:
        - put(data) stores a new frame and wakes every waiter
        - clear() empties the buffer; streaming readers treat this as
          "producer stopped" and end their response
        - close() clears and marks the buffer closed (server stopped);
          waiters return at once and puts are dropped until open()

    Example:
        buffer = FrameBuffer()

        # Producer
        await buffer.put(jpeg_bytes)

        # Reader
        frame = await buffer.wait_for_frame()
        frame = await buffer.wait_for_change(frame)
    """

    def __init__(self) -> None:
        self._frame: Optional[Frame] = None
        self._condition = asyncio.Condition()
        self._closed: bool = False
        self._next_id: int = 0
        self._total_put: int = 0
        self._dropped_while_closed: int = 0

    @property
    def closed(self) -> bool:
        """Whether the buffer has been closed by its server."""
        return self._closed

    @property
    def total_put(self) -> int:
        """Total frames ever stored."""
        return self._total_put

    def get(self) -> Optional[Frame]:
        """
        Current frame without waiting.

        Returns:
            The latest frame, or None if the buffer is empty.
        """
        return self._frame

    async def put(self, data: Optional[bytes]) -> Optional[Frame]:
        """
        Store a new frame, replacing the previous one.

        Args:
            data: JPEG bytes. Empty or None clears the buffer.

        Returns:
            The stored Frame, or None if the buffer was cleared or closed.
        """
        if not data:
            await self.clear()
            return None

        async with self._condition:
            if self._closed:
                self._dropped_while_closed += 1
                logger.debug("Frame dropped, buffer is closed")
                return None

            frame = Frame(
                frame_id=self._next_id,
                timestamp=time.time(),
                data=bytes(data),
            )
            self._next_id += 1
            self._total_put += 1
            self._frame = frame
            self._condition.notify_all()
            return frame

    async def clear(self) -> None:
        """Empty the buffer and wake every waiter."""
        async with self._condition:
            self._frame = None
            self._condition.notify_all()

    async def close(self) -> None:
        """Clear the buffer and release all waiters for good."""
        async with self._condition:
            self._frame = None
            self._closed = True
            self._condition.notify_all()
        logger.debug("Frame buffer closed")

    def open(self) -> None:
        """Accept frames again after close()."""
        self._closed = False

    async def wait_for_frame(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        Wait until the buffer holds a frame.

        Args:
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            The current frame, or None if the buffer was closed
            or the timeout expired.
        """
        return await self._wait(
            lambda: self._frame is not None or self._closed,
            timeout,
        )

    async def wait_for_change(
        self,
        last: Optional[Frame],
        timeout: Optional[float] = None,
    ) -> Optional[Frame]:
        """
        Wait until the current frame is a different object than `last`.

        Intermediate frames stored while the caller was busy are skipped;
        only the latest one is returned.

        Args:
            last: Frame the caller already has
            timeout: Maximum seconds to wait. None = wait forever.

        Returns:
            The new current frame, or None if the buffer was cleared,
            closed, or the timeout expired.
        """
        return await self._wait(
            lambda: self._frame is not last or self._closed,
            timeout,
        )

    async def _wait(self, predicate, timeout: Optional[float]) -> Optional[Frame]:
        async with self._condition:
            try:
                if timeout is not None:
                    await asyncio.wait_for(
                        self._condition.wait_for(predicate),
                        timeout=timeout,
                    )
                else:
                    await self._condition.wait_for(predicate)
            except asyncio.TimeoutError:
                return None
            if self._closed:
                return None
            return self._frame

    def metrics(self) -> dict:
        """
        Get buffer metrics for observability.

        Returns:
            Dict with frame_id, frame_size, total_put, dropped_while_closed
        """
        frame = self._frame
        return {
            "frame_id": frame.frame_id if frame else None,
            "frame_size": frame.size if frame else 0,
            "total_put": self._total_put,
            "dropped_while_closed": self._dropped_while_closed,
            "closed": self._closed,
        }
