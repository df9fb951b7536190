"""
Byte Pipe
=========

Buffers an HTTP response body so the parser can read from it with
per-read timeouts that do not damage the connection.

A background pump task pulls chunks from the response and appends them
to an internal buffer. The parser waits on that buffer with a timeout:
a timeout only means "nothing new yet", the bytes already buffered stay
put and the connection stays usable.

Design Rules:
    - ReadTimeout is retryable, nothing is consumed on timeout
    - EndOfStream means the remote end closed cleanly
    - StreamSevered means the transport failed
    - While discarding (reader paused), incoming chunks are dropped
"""

import asyncio
import logging
from typing import AsyncIterator, Optional


logger = logging.getLogger(__name__)


# Pump stops reading from the socket above this many buffered bytes
DEFAULT_HIGH_WATER = 8 * 1024 * 1024


class ReadTimeout(Exception):
    """No new bytes arrived within the read timeout."""
    pass


class EndOfStream(Exception):
    """The remote end closed the stream."""
    pass


class StreamSevered(Exception):
    """The underlying connection failed."""
    pass


class BytePipe:
    """
    Timeout-friendly reader over an async chunk iterator.

    Attributes:
        discarding: Drop incoming chunks instead of buffering them
        bytes_received: Total bytes pulled from the source

    Example:
        pipe = BytePipe(response.aiter_raw())
        try:
            block = await pipe.read_until(b"\\r\\n\\r\\n", timeout=0.2)
        except ReadTimeout:
            ...  # try again later
        finally:
            await pipe.close()
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        high_water: int = DEFAULT_HIGH_WATER,
    ) -> None:
        """
        Initialize the pipe and start pumping.

        Must be called from a running event loop.

        Args:
            chunks: Async iterator of body chunks
            high_water: Buffered bytes above which the pump pauses
        """
        self._buffer = bytearray()
        self._high_water = high_water
        self._data_ready = asyncio.Event()
        self._space_ready = asyncio.Event()
        self._space_ready.set()
        self._eof: bool = False
        self._error: Optional[BaseException] = None

        self.discarding: bool = False
        self.bytes_received: int = 0

        self._task = asyncio.create_task(self._pump(chunks), name="mjpeg_pipe")

    @property
    def buffered(self) -> int:
        """Bytes currently waiting to be consumed."""
        return len(self._buffer)

    @property
    def finished(self) -> bool:
        """Whether the source ended, cleanly or not."""
        return self._eof

    async def _pump(self, chunks: AsyncIterator[bytes]) -> None:
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                self.bytes_received += len(chunk)
                if self.discarding:
                    continue
                self._buffer.extend(chunk)
                self._data_ready.set()
                if len(self._buffer) > self._high_water:
                    self._space_ready.clear()
                    await self._space_ready.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Pipe source failed: {e!r}")
            self._error = e
        finally:
            self._eof = True
            self._data_ready.set()

    def _check_source(self) -> None:
        if self._error is not None:
            raise StreamSevered(str(self._error) or type(self._error).__name__)
        if self._eof:
            raise EndOfStream()

    def _consumed(self) -> None:
        if len(self._buffer) <= self._high_water:
            self._space_ready.set()

    async def _wait_for_data(self, timeout: float) -> None:
        self._data_ready.clear()
        try:
            await asyncio.wait_for(self._data_ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ReadTimeout()

    async def read_until(
        self,
        separator: bytes,
        timeout: float,
        limit: int = 64 * 1024,
    ) -> Optional[bytes]:
        """
        Read up to and including `separator`.

        Args:
            separator: Byte sequence ending the block
            timeout: Seconds to wait for more bytes before ReadTimeout
            limit: Maximum block size; larger blocks are discarded

        Returns:
            The block, or None if it exceeded `limit` and was dropped.

        Raises:
            ReadTimeout: No terminator and no new bytes within timeout
            EndOfStream: Source ended cleanly before the terminator
            StreamSevered: Source failed
        """
        while True:
            idx = self._buffer.find(separator)
            if idx != -1:
                end = idx + len(separator)
                block = bytes(self._buffer[:end])
                del self._buffer[:end]
                self._consumed()
                return block

            if len(self._buffer) > limit:
                # Keep a tail in case the separator straddles the cut
                keep = len(separator) - 1
                if keep:
                    del self._buffer[:-keep]
                else:
                    self._buffer.clear()
                self._consumed()
                return None

            self._check_source()
            await self._wait_for_data(timeout)

    async def read_into(
        self,
        target: bytearray,
        offset: int,
        count: int,
        timeout: float,
    ) -> int:
        """
        Copy up to `count` buffered bytes into `target[offset:]`.

        Returns as soon as at least one byte is available, like a
        socket read.

        Returns:
            Number of bytes copied (>= 1)

        Raises:
            ReadTimeout: No bytes within timeout
            EndOfStream: Source ended cleanly
            StreamSevered: Source failed
        """
        while not self._buffer:
            self._check_source()
            await self._wait_for_data(timeout)

        n = min(count, len(self._buffer))
        target[offset:offset + n] = self._buffer[:n]
        del self._buffer[:n]
        self._consumed()
        return n

    def discard(self) -> int:
        """
        Drop everything buffered so far.

        Returns:
            Number of bytes dropped.
        """
        dropped = len(self._buffer)
        self._buffer.clear()
        self._consumed()
        return dropped

    def raise_if_finished(self) -> None:
        """Raise EndOfStream or StreamSevered if the source has ended."""
        if self._eof and not self._buffer:
            self._check_source()

    async def close(self) -> None:
        """Stop the pump task."""
        if not self._task.done():
            self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._buffer.clear()
