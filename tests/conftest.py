"""
Test Configuration
==================

Pytest fixtures and test configuration for mjpeg_relay.

FakeCamera is a tiny asyncio TCP server speaking just enough HTTP to
play a scripted MJPEG camera.
"""

import asyncio
import socket
from typing import Awaitable, Callable, Dict, List, Optional

import numpy as np
import pytest

from mjpeg_relay.stream.image_decoder import encode_jpeg


CAMERA_BOUNDARY = "camboundary"


def camera_head(
    status: str = "200 OK",
    content_type: str = f"multipart/x-mixed-replace; boundary={CAMERA_BOUNDARY}",
) -> bytes:
    """Response head without Content-Length: the body runs until close."""
    return (
        f"HTTP/1.0 {status}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"\r\n"
    ).encode("ascii")


def camera_part(data: bytes, content_type: str = "image/jpeg") -> bytes:
    """One part the way typical cameras write it."""
    head = (
        f"--{CAMERA_BOUNDARY}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(data)}\r\n"
        f"\r\n"
    ).encode("ascii")
    return head + data + b"\r\n"


Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class FakeCamera:
    """
    Scripted HTTP camera.

    Attributes:
        connections: Number of accepted connections
        requests: Raw request heads, one dict of lowercased headers each
    """

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.connections: int = 0
        self.requests: List[Dict[str, str]] = []
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []
        self.port: int = 0

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}/video"

    async def start(self) -> "FakeCamera":
        self._server = await asyncio.start_server(self._on_connection, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def _on_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.connections += 1
        self._writers.append(writer)
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            headers = {}
            for line in head.decode("latin-1").split("\r\n")[1:]:
                if ":" in line:
                    name, value = line.split(":", 1)
                    headers[name.strip().lower()] = value.strip()
            self.requests.append(headers)
            await self.handler(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    async def close(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll `predicate` until true, failing the test after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def unused_port() -> int:
    """A port nothing listens on (released right away)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def no_proxy_env(monkeypatch):
    """Keep local test traffic away from any configured HTTP proxy."""
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sample_image():
    """Provide a small BGR image with a gradient."""
    image = np.zeros((48, 64, 3), dtype=np.uint8)
    image[:, :, 1] = np.arange(64, dtype=np.uint8)[None, :] * 4
    return image


@pytest.fixture
def sample_jpeg(sample_image):
    """Provide real JPEG bytes (64x48)."""
    return encode_jpeg(sample_image, quality=90)


@pytest.fixture
async def fake_camera():
    """
    Factory for FakeCamera instances; all of them are closed on teardown.

    Usage:
        camera = await fake_camera(handler)
    """
    cameras: List[FakeCamera] = []

    async def factory(handler: Handler) -> FakeCamera:
        camera = await FakeCamera(handler).start()
        cameras.append(camera)
        return camera

    yield factory

    for camera in cameras:
        await camera.close()
