"""
MJPEG Stream Reader
===================

HTTP client that keeps a best-effort live connection to a remote MJPEG
camera and hands every JPEG part to a sink.

This module provides the MJPEGStreamReader class which:
    - Connects to the camera URL, with optional Basic/Digest credentials
    - Parses multipart parts by their Content-Length
    - Retries read timeouts silently, gives up after a stall
    - Reconnects after a delay, indefinitely, when configured to
    - Emits connection notifications for UI/orchestration layers

State machine:

    IDLE -> CONNECTING -> STREAMING <-> PAUSED
                              |
                              v
                       CONNECTION_LOST -> RECONNECT_WAIT -> CONNECTING
                              |
                              v
                            IDLE            (restart_on_error=False)

    stop()/terminate() from any state -> CLOSED

Design Rules:
    - Does NOT decode JPEG data (the sink decides what to do with it)
    - Never lets an exception escape its task; failures become
      notifications
    - Pausing keeps the connection open, stopping always closes it
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import httpx

from mjpeg_relay.events import EventHook
from mjpeg_relay.stream.pipe import BytePipe, EndOfStream, ReadTimeout, StreamSevered
from mjpeg_relay.stream.protocol import (
    HEADER_TERMINATOR,
    PartHeader,
    ProtocolError,
    parse_part_header,
    validate_part_header,
)


logger = logging.getLogger(__name__)


FrameSink = Callable[[bytes], Union[None, Awaitable[None]]]

# Initial scratch buffer size (104 KiB), doubled on demand
INITIAL_BUFFER_SIZE = 106496

# Header blocks larger than this are treated as garbage
MAX_HEADER_SIZE = 64 * 1024

SUPPORTED_AUTH_SCHEMES = ("basic", "digest")


class ReaderState(str, Enum):
    """Lifecycle states of a stream reader."""

    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    STREAMING = "STREAMING"
    PAUSED = "PAUSED"
    CONNECTION_LOST = "CONNECTION_LOST"
    RECONNECT_WAIT = "RECONNECT_WAIT"
    CLOSED = "CLOSED"


class ConfigurationError(Exception):
    """Raised when the camera URL or credentials cannot be used."""
    pass


class StreamStalled(Exception):
    """No usable data arrived within the give-up timeout."""

    def __init__(self, elapsed: float) -> None:
        super().__init__(f"no data for {elapsed:.1f} seconds")
        self.elapsed = elapsed


class ReaderMetrics:
    """Metrics for MJPEGStreamReader observability."""

    __slots__ = (
        "frames_received",
        "frame_bytes",
        "reconnect_count",
        "connection_failures",
        "read_timeouts",
        "protocol_errors",
        "frames_missed",
        "last_frame_time",
    )

    def __init__(self) -> None:
        self.frames_received: int = 0
        self.frame_bytes: int = 0
        self.reconnect_count: int = 0
        self.connection_failures: int = 0
        self.read_timeouts: int = 0
        self.protocol_errors: int = 0
        self.frames_missed: int = 0
        self.last_frame_time: float = 0.0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_received": self.frames_received,
            "frame_bytes": self.frame_bytes,
            "reconnect_count": self.reconnect_count,
            "connection_failures": self.connection_failures,
            "read_timeouts": self.read_timeouts,
            "protocol_errors": self.protocol_errors,
            "frames_missed": self.frames_missed,
            "last_frame_time": self.last_frame_time,
        }


class MJPEGStreamReader:
    """
    Reader for a remote MJPEG (multipart/x-mixed-replace) stream.

    Attributes:
        sink: Callable receiving each frame's JPEG bytes (sync or async)
        restart_on_error: Reconnect after a lost connection
        read_timeout: Seconds a single read may wait (not fatal)
        give_up_timeout: Seconds without a frame header before giving up
        reconnect_delay: Seconds to wait before reconnecting
        connect_timeout: Seconds allowed for TCP/TLS connect
        metrics: Operational metrics

    Notifications:
        connection_succeeded: fired for every delivered frame
        connection_failed: fired for every failed or lost connection
        connection_closed: fired when the camera ends the stream

    Example:
        reader = MJPEGStreamReader(
            "http://camera.local:8080/video",
            sink=handle_jpeg,
            login="admin",
            password="secret",
        )
        reader.connection_failed.subscribe(show_error)

        reader.start()
        ...
        await reader.stop()
    """

    def __init__(
        self,
        url: str,
        sink: Optional[FrameSink] = None,
        login: Optional[str] = None,
        password: Optional[str] = None,
        authentication: str = "Basic",
        restart_on_error: bool = True,
        read_timeout: float = 0.2,
        give_up_timeout: float = 10.0,
        reconnect_delay: float = 1.0,
        connect_timeout: float = 3.0,
    ) -> None:
        """
        Initialize the reader. Nothing connects until start().

        Args:
            url: Camera stream URL
            sink: Frame sink
            login: Optional login; credentials are only sent when set
            password: Optional password
            authentication: Authentication scheme name ("Basic" or "Digest")
            restart_on_error: Reconnect after a lost connection
            read_timeout: Timeout for each read, in seconds
            give_up_timeout: Stall time before the connection is lost
            reconnect_delay: Delay before reconnecting, in seconds
            connect_timeout: Timeout for establishing the connection
        """
        self._url = url
        self._login = login
        self._password = password
        self.authentication = authentication

        self.sink = sink
        self.restart_on_error = restart_on_error
        self.read_timeout = read_timeout
        self.give_up_timeout = give_up_timeout
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout

        self.connection_succeeded = EventHook("connection_succeeded")
        self.connection_failed = EventHook("connection_failed")
        self.connection_closed = EventHook("connection_closed")

        # State
        self._state: ReaderState = ReaderState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._paused: bool = False
        self._resumed = asyncio.Event()
        self._resync: bool = False
        self._first_frame: bool = False
        self._wait_started: Optional[float] = None

        # Internal frame buffer, never shrunk while the reader lives
        self._scratch = bytearray(INITIAL_BUFFER_SIZE)

        self.metrics = ReaderMetrics()

    @classmethod
    def from_config(cls, config, sink: Optional[FrameSink] = None) -> "MJPEGStreamReader":
        """
        Build a reader from a ReaderConfig section.

        Args:
            config: mjpeg_relay.config.ReaderConfig
            sink: Frame sink
        """
        return cls(
            url=config.url,
            sink=sink,
            login=config.login,
            password=config.password,
            authentication=config.authentication,
            restart_on_error=config.restart_on_error,
            read_timeout=config.read_timeout,
            give_up_timeout=config.give_up_timeout,
            reconnect_delay=config.reconnect_delay,
            connect_timeout=config.connect_timeout,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ReaderState:
        return self._state

    @property
    def url(self) -> str:
        return self._url

    @property
    def login(self) -> Optional[str]:
        return self._login

    @property
    def password(self) -> Optional[str]:
        return self._password

    @property
    def is_streaming(self) -> bool:
        """Whether a response stream is open (playing or paused)."""
        return self._state in (ReaderState.STREAMING, ReaderState.PAUSED)

    @property
    def is_active(self) -> bool:
        """Whether the reader task is running."""
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def buffer_size(self) -> int:
        """Current scratch buffer capacity in bytes."""
        return len(self._scratch)

    # =========================================================================
    # Control
    # =========================================================================

    def start(self) -> None:
        """
        Start streaming in a background task.

        Must be called from a running event loop. Does nothing if the
        reader is already running.
        """
        if self.is_active:
            logger.debug("Stream reader already running")
            return

        self._paused = False
        self._resumed.set()
        self._state = ReaderState.CONNECTING
        self._task = asyncio.get_running_loop().create_task(
            self.run(),
            name="mjpeg_reader",
        )

    async def stop(self) -> None:
        """
        Stop streaming and close the connection immediately.

        Safe to call in any state.
        """
        task = self._task
        self._task = None
        was_streaming = self.is_streaming

        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if was_streaming:
            logger.info(f"Stream stopped: {self._url}")

        self._paused = False
        self._resumed.set()
        self._state = ReaderState.CLOSED

    async def terminate(self) -> None:
        """Stop and release the scratch buffer."""
        await self.stop()
        self._scratch = bytearray()

    async def join(self) -> None:
        """Wait for the reader task to finish on its own."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def pause(self) -> None:
        """Stop delivering frames but keep the connection open."""
        if self._state != ReaderState.STREAMING:
            logger.debug(f"Pause ignored in state {self._state.value}")
            return
        self._paused = True
        self._resumed.clear()
        self._state = ReaderState.PAUSED
        logger.info("Stream paused")

    def resume(self) -> None:
        """Resume frame delivery after pause()."""
        if self._state != ReaderState.PAUSED:
            logger.debug(f"Resume ignored in state {self._state.value}")
            return
        self._paused = False
        self._resync = True
        self._wait_started = None
        self._state = ReaderState.STREAMING
        self._resumed.set()
        logger.info("Stream resumed")

    async def set_url(
        self,
        url: str,
        login: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        """
        Change the camera address and credentials.

        The reader is stopped first and restarted if it was running.
        """
        was_active = self.is_active
        await self.stop()

        self._url = url
        self._login = login
        self._password = password

        if was_active:
            self.start()

    # =========================================================================
    # Connection Loop
    # =========================================================================

    async def run(self) -> None:
        """
        Connect and stream until stopped, applying the reconnect policy.

        Runs until stop() is called, or until a failure with
        restart_on_error disabled.
        """
        reconnecting = False
        try:
            while True:
                self._state = ReaderState.CONNECTING
                try:
                    lost = await self._connect_and_stream(reconnecting)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Stream reader failed unexpectedly")
                    lost = True

                if not lost:
                    self._state = ReaderState.IDLE
                    return

                self._state = ReaderState.CONNECTION_LOST
                self.connection_failed.fire()

                if not self.restart_on_error:
                    logger.info("Not restarting, restart on error is disabled")
                    self._state = ReaderState.IDLE
                    return

                self._state = ReaderState.RECONNECT_WAIT
                self.metrics.reconnect_count += 1
                logger.info(
                    f"Reconnecting in {self.reconnect_delay:.1f}s "
                    f"(attempt {self.metrics.reconnect_count})"
                )
                await asyncio.sleep(self.reconnect_delay)
                reconnecting = True

        except asyncio.CancelledError:
            self._state = ReaderState.CLOSED
            raise

    def _build_auth(self) -> Optional[httpx.Auth]:
        if not self._login:
            return None

        scheme = self.authentication.strip().lower()
        if scheme == "basic":
            return httpx.BasicAuth(self._login, self._password or "")
        if scheme == "digest":
            return httpx.DigestAuth(self._login, self._password or "")

        raise ConfigurationError(
            f"Unsupported authentication scheme: {self.authentication} "
            f"(expected one of {', '.join(SUPPORTED_AUTH_SCHEMES)})"
        )

    def _connect_failed(self, reconnecting: bool) -> bool:
        """
        Handle a transport-level connect failure.

        An explicit start reports and goes idle. A reconnect attempt is
        treated as a lost connection so the retry cycle continues.
        """
        self.metrics.connection_failures += 1
        if reconnecting:
            return True
        self.connection_failed.fire()
        return False

    async def _connect_and_stream(self, reconnecting: bool) -> bool:
        """
        One connection attempt.

        Returns:
            True if the connection was lost (reconnect policy applies),
            False if the reader must go idle.
        """
        try:
            auth = self._build_auth()
            url = httpx.URL(self._url)
        except (ConfigurationError, httpx.InvalidURL) as e:
            logger.error(f"Wrong format for camera URL: {e}")
            self.metrics.connection_failures += 1
            self.connection_failed.fire()
            return False

        timeout = httpx.Timeout(self.connect_timeout, read=None)
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            request = client.build_request("GET", url)
            try:
                response = await asyncio.wait_for(
                    client.send(request, auth=auth, stream=True),
                    timeout=max(self.connect_timeout, self.give_up_timeout),
                )
            except httpx.UnsupportedProtocol as e:
                logger.error(f"Wrong format for camera URL: {e}")
                self.metrics.connection_failures += 1
                self.connection_failed.fire()
                return False
            except (httpx.HTTPError, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to connect to camera {self._url}: {e!r}")
                return self._connect_failed(reconnecting)

            try:
                if not response.is_success:
                    logger.error(
                        f"Camera {self._url} answered HTTP {response.status_code}"
                    )
                    return self._connect_failed(reconnecting)

                logger.info(
                    f"Connected to camera: {self._url} "
                    f"({response.headers.get('content-type', 'no content type')})"
                )
                return await self._stream_frames(response)
            finally:
                await response.aclose()

    async def _stream_frames(self, response: httpx.Response) -> bool:
        """
        Parse loop for one open response.

        Returns:
            Always True: the loop only ends when the connection is lost.
        """
        pipe = BytePipe(response.aiter_raw())
        self._state = ReaderState.PAUSED if self._paused else ReaderState.STREAMING
        self._first_frame = True
        self._wait_started = None
        self._resync = False

        try:
            while True:
                try:
                    if self._paused:
                        await self._wait_while_paused(pipe)
                        continue
                    await self._read_frame(pipe)

                except EndOfStream:
                    logger.warning(f"Stream closed by camera: {self._url}")
                    self.connection_closed.fire()
                    return True
                except StreamSevered as e:
                    logger.error(f"Stream lost: {e}")
                    return True
                except StreamStalled as e:
                    logger.error(f"Connection from camera lost, {e}")
                    return True
                except ProtocolError as e:
                    self.metrics.protocol_errors += 1
                    logger.error(f"Protocol error from camera {self._url}: {e}")
                    return True
        finally:
            await pipe.close()

    # =========================================================================
    # Frame Parsing
    # =========================================================================

    async def _wait_while_paused(self, pipe: BytePipe) -> None:
        pipe.discarding = True
        pipe.discard()
        try:
            while self._paused:
                try:
                    await asyncio.wait_for(
                        self._resumed.wait(),
                        timeout=self.read_timeout,
                    )
                except asyncio.TimeoutError:
                    pipe.discard()
                    pipe.raise_if_finished()
        finally:
            pipe.discarding = False

    async def _read_header(self, pipe: BytePipe) -> Optional[PartHeader]:
        """
        Read and check the next part header block.

        Returns:
            The header, or None if nothing usable arrived this time.

        Raises:
            UnsupportedContentType: Part is not a JPEG image
            FrameTooLarge: Declared length is implausibly large
        """
        try:
            block = await pipe.read_until(
                HEADER_TERMINATOR,
                timeout=self.read_timeout,
                limit=MAX_HEADER_SIZE,
            )
        except ReadTimeout:
            self.metrics.read_timeouts += 1
            return None

        if block is None:
            logger.warning("Oversized part header discarded")
            return None

        header = parse_part_header(block)

        if self._resync:
            # First block after a resume may start inside a JPEG body
            if not header.is_jpeg or header.content_length is None:
                logger.debug("Skipping partial part after resume")
                return None
            self._resync = False

        if self._first_frame:
            logger.info(f"Frame header read: {header.raw.strip()!r}")

        validate_part_header(header)
        return header

    async def _no_frame_yet(self) -> None:
        """
        Track time spent without a frame header.

        Raises:
            StreamStalled: When the give-up timeout is exceeded
        """
        now = time.monotonic()
        if self._wait_started is None:
            self._wait_started = now
            logger.debug("Waiting for frames")

        elapsed = now - self._wait_started
        if elapsed >= self.give_up_timeout:
            self._wait_started = None
            raise StreamStalled(elapsed)

        await asyncio.sleep(0)

    def _ensure_capacity(self, needed: int) -> None:
        size = len(self._scratch) or INITIAL_BUFFER_SIZE
        while size < needed:
            size *= 2
        if size != len(self._scratch):
            logger.debug(f"Frame buffer grown to {size} bytes")
            self._scratch = bytearray(size)

    async def _read_body(self, pipe: BytePipe, length: int) -> bool:
        """
        Read exactly `length` bytes into the scratch buffer.

        Returns:
            True when complete, False if the reader was paused meanwhile.

        Raises:
            StreamStalled: No body bytes within the give-up timeout
        """
        left = length
        last_progress = time.monotonic()

        while left > 0:
            if self._paused:
                return False
            try:
                left -= await pipe.read_into(
                    self._scratch,
                    length - left,
                    left,
                    timeout=self.read_timeout,
                )
                last_progress = time.monotonic()
            except ReadTimeout:
                # Connection still alive, retry the remaining bytes
                self.metrics.read_timeouts += 1
                stalled = time.monotonic() - last_progress
                if stalled >= self.give_up_timeout:
                    raise StreamStalled(stalled)

        return True

    async def _read_frame(self, pipe: BytePipe) -> bool:
        """
        Read one part and deliver it.

        Returns:
            True if a frame was delivered.
        """
        header = await self._read_header(pipe)
        if header is None or not header.content_length:
            await self._no_frame_yet()
            return False

        self._wait_started = None
        length = header.content_length
        self._ensure_capacity(length)

        try:
            complete = await self._read_body(pipe, length)
        except (EndOfStream, StreamSevered, StreamStalled):
            self.metrics.frames_missed += 1
            logger.warning("Frame missed")
            raise

        if not complete:
            self.metrics.frames_missed += 1
            return False

        frame = bytes(memoryview(self._scratch)[:length])
        await self._deliver(frame)

        self.metrics.frames_received += 1
        self.metrics.frame_bytes += length
        self.metrics.last_frame_time = time.time()
        self.connection_succeeded.fire()
        self._first_frame = False
        return True

    async def _deliver(self, frame: bytes) -> None:
        if self.sink is None:
            return
        try:
            result = self.sink(frame)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Frame sink failed")
