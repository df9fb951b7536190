"""
MJPEG Frame Server
==================

Lifecycle of the HTTP listener that serves a FrameBuffer.

The server runs an embedded uvicorn instance on a socket it binds
itself, so bind failures reach the caller and an ephemeral port is
known as soon as start() returns.

Design Rules:
    - Port 0 means "first free port": find one, release it, bind it
    - The bound port is fixed until stop(); changing it while
      listening is rejected
    - stop() closes the buffer first, so streaming responses end on
      their own; stragglers are cancelled after a grace period
    - Never blocks the frame producer
"""

import asyncio
import contextlib
import logging
import socket
from typing import Iterator, Optional

import uvicorn

from mjpeg_relay.server.app import ServerMetrics, create_app
from mjpeg_relay.stream.buffer import FrameBuffer


logger = logging.getLogger(__name__)


# Extra time allowed on top of the grace period before the task is killed
STOP_MARGIN_SECONDS = 5.0


class ServerBindError(Exception):
    """Raised when the listening socket cannot be bound."""
    pass


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves process signals to the host application."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def find_free_port(host: str = "127.0.0.1") -> int:
    """
    Ask the OS for a free TCP port.

    The scratch socket is released before returning.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class MJPEGFrameServer:
    """
    HTTP server streaming the latest frame to any number of clients.

    Attributes:
        host: Bind host
        single_frame: Send one image per request instead of a stream
        shutdown_grace_seconds: Time open responses get to finish on stop
        metrics: Operational metrics

    Example:
        buffer = FrameBuffer()
        server = MJPEGFrameServer(buffer, port=0)

        port = await server.start()
        await buffer.put(jpeg_bytes)
        ...
        await server.stop()
    """

    def __init__(
        self,
        buffer: Optional[FrameBuffer] = None,
        host: str = "0.0.0.0",
        port: int = 0,
        single_frame: bool = False,
        shutdown_grace_seconds: float = 2.0,
        access_log: bool = False,
    ) -> None:
        """
        Initialize the server. Nothing is bound until start().

        Args:
            buffer: Frame buffer to serve; a new one is created if None
            host: Bind host
            port: Bind port, 0 = first free port
            single_frame: Single-frame mode
            shutdown_grace_seconds: Grace period for open responses on stop
            access_log: Enable uvicorn access logging
        """
        self.host = host
        self.single_frame = single_frame
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.access_log = access_log

        self._buffer = buffer if buffer is not None else FrameBuffer()
        self._port = port
        self._bound_port: int = 0
        self._listening: bool = False
        self._uvicorn: Optional[_EmbeddedServer] = None
        self._task: Optional[asyncio.Task] = None

        self.metrics = ServerMetrics()

    @classmethod
    def from_config(cls, config, buffer: Optional[FrameBuffer] = None) -> "MJPEGFrameServer":
        """
        Build a server from a ServerConfig section.

        Args:
            config: mjpeg_relay.config.ServerConfig
            buffer: Frame buffer to serve
        """
        return cls(
            buffer=buffer,
            host=config.host,
            port=config.port,
            single_frame=config.single_frame,
            shutdown_grace_seconds=config.shutdown_grace_seconds,
            access_log=config.access_log,
        )

    @property
    def buffer(self) -> FrameBuffer:
        return self._buffer

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def port(self) -> int:
        """Bound port while listening, configured port otherwise."""
        if self._listening:
            return self._bound_port
        return self._port

    @port.setter
    def port(self, value: int) -> None:
        self.set_port(value)

    def set_port(self, port: int) -> bool:
        """
        Change the configured port.

        Returns:
            False if the server is listening and the change was rejected.
        """
        if self._listening:
            logger.warning("Cannot change the port while frame server is running")
            return False
        self._port = port
        return True

    def _bind(self, port: int) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, port))
        except OSError as e:
            sock.close()
            raise ServerBindError(f"Cannot bind {self.host}:{port}: {e}") from e
        return sock

    async def start(self) -> int:
        """
        Bind the listener and start serving.

        Returns:
            The bound port.

        Raises:
            ServerBindError: If the port cannot be bound
        """
        if self._listening:
            logger.warning("Frame server already running")
            return self._bound_port

        port = self._port
        if port == 0:
            try:
                port = find_free_port(self.host)
            except OSError as e:
                raise ServerBindError(f"Cannot find a free port on {self.host}: {e}") from e

        sock = self._bind(port)
        self._buffer.open()

        config = uvicorn.Config(
            create_app(self),
            log_config=None,
            access_log=self.access_log,
            date_header=False,
            lifespan="off",
            timeout_graceful_shutdown=self.shutdown_grace_seconds,
        )
        self._uvicorn = _EmbeddedServer(config)
        self._task = asyncio.create_task(
            self._uvicorn.serve(sockets=[sock]),
            name="mjpeg_frame_server",
        )

        while not self._uvicorn.started:
            if self._task.done():
                sock.close()
                error = None if self._task.cancelled() else self._task.exception()
                raise ServerBindError(f"Frame server failed to start on port {port}: {error!r}")
            await asyncio.sleep(0.01)

        self._bound_port = port
        self._listening = True
        logger.info(
            f"Frame server started on {self.host}:{port} "
            f"({'single frame' if self.single_frame else 'continuous'} mode)"
        )
        return port

    async def stop(self) -> None:
        """
        Stop serving.

        Clears and closes the buffer so open streams end, stops
        accepting connections, and cancels responses still open after
        the grace period.
        """
        if not self._listening:
            return
        self._listening = False

        await self._buffer.close()

        if self._uvicorn is not None and self._task is not None:
            self._uvicorn.should_exit = True
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._task),
                    timeout=self.shutdown_grace_seconds + STOP_MARGIN_SECONDS,
                )
            except asyncio.TimeoutError:
                logger.warning("Frame server did not stop in time, forcing exit")
                self._uvicorn.force_exit = True
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)

        self._uvicorn = None
        self._task = None
        logger.info("Frame server stopped")
