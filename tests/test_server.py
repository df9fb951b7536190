"""
Frame Server Tests
==================

Tests for MJPEGFrameServer over real HTTP connections.
"""

import asyncio
import socket

import httpx
import pytest

from mjpeg_relay.server import MJPEGFrameServer, ServerBindError, find_free_port
from mjpeg_relay.stream import FrameBuffer
from mjpeg_relay.stream.protocol import BOUNDARY, parse_part_header


class PartReader:
    """Splits a multipart/x-mixed-replace body into parts."""

    def __init__(self, response: httpx.Response) -> None:
        self._chunks = response.aiter_raw()
        self._buffer = bytearray()

    async def _fill(self) -> None:
        chunk = await self._chunks.__anext__()
        self._buffer.extend(chunk)

    async def next_part(self):
        """Returns (header, body) of the next part."""
        while b"\r\n\r\n" not in self._buffer:
            await self._fill()
        end = self._buffer.index(b"\r\n\r\n") + 4
        header = parse_part_header(bytes(self._buffer[:end]))
        del self._buffer[:end]

        length = header.content_length
        while len(self._buffer) < length + 2:
            await self._fill()
        body = bytes(self._buffer[:length])
        assert self._buffer[length:length + 2] == b"\r\n"
        del self._buffer[:length + 2]
        return header, body

    async def at_end(self) -> bool:
        try:
            await self._fill()
        except StopAsyncIteration:
            return True
        return False


@pytest.fixture
async def server():
    frame_server = MJPEGFrameServer(host="127.0.0.1", port=0, shutdown_grace_seconds=0.5)
    yield frame_server
    await frame_server.stop()


@pytest.fixture
async def client():
    async with httpx.AsyncClient(timeout=5.0) as http:
        yield http


class TestLifecycle:
    """Tests for start, stop and port handling."""

    async def test_port_zero_binds_free_port(self, server):
        port = await server.start()

        assert port != 0
        assert server.port == port
        assert server.listening

    async def test_port_change_rejected_while_listening(self, server):
        port = await server.start()

        assert server.set_port(port + 1) is False
        server.port = port + 2
        assert server.port == port

    async def test_port_change_accepted_when_stopped(self):
        frame_server = MJPEGFrameServer(host="127.0.0.1")
        assert frame_server.set_port(8123) is True
        assert frame_server.port == 8123

    async def test_explicit_port(self, server):
        wanted = find_free_port("127.0.0.1")
        server.port = wanted
        assert await server.start() == wanted

    async def test_bind_error(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]

            frame_server = MJPEGFrameServer(host="127.0.0.1", port=port)
            with pytest.raises(ServerBindError):
                await frame_server.start()
            assert not frame_server.listening

    async def test_restart_after_stop(self, server):
        await server.start()
        await server.stop()
        assert not server.listening

        port = await server.start()
        assert port != 0
        assert not server.buffer.closed


class TestSingleFrame:
    """Tests for single-frame mode."""

    async def test_serves_current_frame(self, server, client):
        server.single_frame = True
        port = await server.start()
        data = b"\xff\xd8" + b"j" * 998
        await server.buffer.put(data)

        response = await client.get(f"http://127.0.0.1:{port}/snapshot.jpg")

        assert response.status_code == 200
        assert response.content == data
        assert response.headers["content-type"] == "image/jpeg"
        assert response.headers["content-length"] == "1000"
        assert "date" in response.headers
        assert response.headers["last-modified"] == response.headers["date"]
        assert "no-cache" in response.headers["cache-control"]
        assert server.metrics.single_frames_sent == 1

    async def test_concurrent_requests(self, server, client):
        server.single_frame = True
        port = await server.start()
        await server.buffer.put(b"still")

        responses = await asyncio.gather(
            *(client.get(f"http://127.0.0.1:{port}/{i}") for i in range(5))
        )
        assert [r.content for r in responses] == [b"still"] * 5
        assert server.metrics.requests == 5

    async def test_waits_for_first_frame(self, server, client):
        server.single_frame = True
        port = await server.start()

        request = asyncio.create_task(client.get(f"http://127.0.0.1:{port}/"))
        await asyncio.sleep(0.1)
        assert not request.done()

        await server.buffer.put(b"late frame")
        response = await asyncio.wait_for(request, timeout=3.0)
        assert response.content == b"late frame"


class TestContinuous:
    """Tests for multipart streaming mode."""

    async def test_stream_headers_and_first_part(self, server, client):
        port = await server.start()
        data = b"\xff\xd8" + b"a" * 998
        await server.buffer.put(data)

        async with client.stream("GET", f"http://127.0.0.1:{port}/video") as response:
            assert response.status_code == 200
            assert response.headers["content-type"] == (
                f"multipart/x-mixed-replace; boundary={BOUNDARY}"
            )
            header, body = await PartReader(response).next_part()

        assert header.content_length == 1000
        assert header.is_jpeg
        assert f"--{BOUNDARY}" in header.raw
        assert body == data

    async def test_only_latest_frame_sent(self, server, client):
        port = await server.start()
        await server.buffer.put(b"first")

        async with client.stream("GET", f"http://127.0.0.1:{port}/") as response:
            parts = PartReader(response)
            _, body = await parts.next_part()
            assert body == b"first"

            await server.buffer.put(b"second")
            await server.buffer.put(b"third")
            _, body = await parts.next_part()
            assert body == b"third"

    async def test_late_client_gets_latest_frame_only(self, server, client):
        port = await server.start()
        await server.buffer.put(b"old")
        await server.buffer.put(b"new")

        async with client.stream("GET", f"http://127.0.0.1:{port}/") as response:
            _, body = await PartReader(response).next_part()
            assert body == b"new"

            await asyncio.sleep(0.2)
            assert server.metrics.parts_sent == 1

    async def test_clients_are_independent(self, server, client):
        port = await server.start()
        await server.buffer.put(b"shared")

        async with client.stream("GET", f"http://127.0.0.1:{port}/a") as first, \
                client.stream("GET", f"http://127.0.0.1:{port}/b") as second:
            _, body_a = await PartReader(first).next_part()
            _, body_b = await PartReader(second).next_part()

            assert body_a == body_b == b"shared"
            assert server.metrics.active_streams == 2

    async def test_cleared_buffer_ends_stream(self, server, client):
        port = await server.start()
        await server.buffer.put(b"frame")

        async with client.stream("GET", f"http://127.0.0.1:{port}/") as response:
            parts = PartReader(response)
            await parts.next_part()

            await server.buffer.clear()
            assert await asyncio.wait_for(parts.at_end(), timeout=3.0)

    async def test_stop_ends_open_streams(self, server, client):
        port = await server.start()
        await server.buffer.put(b"frame")

        async with client.stream("GET", f"http://127.0.0.1:{port}/") as response:
            parts = PartReader(response)
            await parts.next_part()

            await asyncio.wait_for(server.stop(), timeout=5.0)
            assert await asyncio.wait_for(parts.at_end(), timeout=3.0)

    async def test_stop_rejects_waiting_requests(self, server, client):
        port = await server.start()

        request = asyncio.create_task(client.get(f"http://127.0.0.1:{port}/"))
        await asyncio.sleep(0.1)
        await server.stop()

        response = await asyncio.wait_for(request, timeout=3.0)
        assert response.status_code == 503
        assert server.metrics.rejected == 1


class TestSharedBuffer:
    """Tests for serving a caller-owned buffer."""

    async def test_external_buffer(self, client):
        buffer = FrameBuffer()
        frame_server = MJPEGFrameServer(buffer, host="127.0.0.1", single_frame=True)
        port = await frame_server.start()
        try:
            assert frame_server.buffer is buffer
            await buffer.put(b"external")
            response = await client.get(f"http://127.0.0.1:{port}/")
            assert response.content == b"external"
        finally:
            await frame_server.stop()
