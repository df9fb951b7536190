"""
Stream Reader Tests
===================

Tests for MJPEGStreamReader against a scripted local camera.
"""

import asyncio
import base64

import pytest

from conftest import camera_head, camera_part, unused_port, wait_until
from mjpeg_relay.stream import ConfigurationError, MJPEGStreamReader, ReaderState
from mjpeg_relay.stream.reader import INITIAL_BUFFER_SIZE


def payload(i: int, size: int = 1000) -> bytes:
    """Distinct fake JPEG body without any CR/LF inside."""
    head = f"\xff\xd8frame-{i:05d}-".encode("latin-1")
    return head + b"x" * (size - len(head))


class Recorder:
    """Collects frames and notifications from a reader."""

    def __init__(self, reader: MJPEGStreamReader) -> None:
        self.frames = []
        self.succeeded = 0
        self.failed = 0
        self.closed = 0
        reader.sink = self.frames.append
        reader.connection_succeeded.subscribe(self._on_succeeded)
        reader.connection_failed.subscribe(self._on_failed)
        reader.connection_closed.subscribe(self._on_closed)

    def _on_succeeded(self):
        self.succeeded += 1

    def _on_failed(self):
        self.failed += 1

    def _on_closed(self):
        self.closed += 1


def make_reader(url: str, **options) -> MJPEGStreamReader:
    options.setdefault("read_timeout", 0.05)
    options.setdefault("give_up_timeout", 1.0)
    options.setdefault("reconnect_delay", 0.05)
    options.setdefault("connect_timeout", 1.0)
    return MJPEGStreamReader(url, **options)


class TestFrameDelivery:
    """Tests for exact frame extraction."""

    async def test_frames_delivered_byte_exact(self, fake_camera):
        frames = [payload(i, size=500 + i * 100) for i in range(3)]

        async def handler(reader, writer):
            writer.write(camera_head())
            for data in frames:
                writer.write(camera_part(data))
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: len(recorder.frames) == 3)
        await reader.stop()

        assert recorder.frames == frames
        assert recorder.succeeded == 3
        assert recorder.failed == 0
        assert reader.state == ReaderState.CLOSED
        assert reader.metrics.frames_received == 3

    async def test_async_sink(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(payload(1)))
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        received = []

        async def sink(data):
            await asyncio.sleep(0)
            received.append(data)

        reader = make_reader(camera.url, sink=sink)
        reader.start()
        await wait_until(lambda: len(received) == 1)
        await reader.stop()

        assert received == [payload(1)]

    async def test_parts_split_across_writes(self, fake_camera):
        data = payload(7, size=4000)
        wire = camera_head() + camera_part(data) + camera_part(data)

        async def handler(reader, writer):
            for i in range(0, len(wire), 333):
                writer.write(wire[i:i + 333])
                await writer.drain()
                await asyncio.sleep(0.002)
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: len(recorder.frames) == 2)
        await reader.stop()

        assert recorder.frames == [data, data]

    async def test_buffer_grows_for_large_frames(self, fake_camera):
        large = payload(1, size=300_000)

        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(large))
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)
        assert reader.buffer_size == INITIAL_BUFFER_SIZE

        reader.start()
        await wait_until(lambda: len(recorder.frames) == 1)
        await reader.stop()

        assert recorder.frames == [large]
        assert reader.buffer_size == INITIAL_BUFFER_SIZE * 4

    async def test_part_without_content_type(self, fake_camera):
        data = payload(3)

        async def handler(reader, writer):
            writer.write(
                camera_head()
                + f"--camboundary\r\nContent-Length: {len(data)}\r\n\r\n".encode("ascii")
                + data
            )
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: len(recorder.frames) == 1)
        await reader.stop()

        assert recorder.frames == [data]
        assert recorder.failed == 0

    async def test_failing_sink_does_not_stop_reader(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(payload(1)) + camera_part(payload(2)))
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        calls = []

        def sink(data):
            calls.append(data)
            raise RuntimeError("sink broke")

        reader.sink = sink
        reader.start()
        await wait_until(lambda: len(calls) == 2)
        assert reader.state == ReaderState.STREAMING
        await reader.stop()

    async def test_short_stalls_are_not_fatal(self, fake_camera):
        first, second = payload(1, size=3000), payload(2, size=3000)

        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(first))
            await writer.drain()
            await asyncio.sleep(0.3)

            part = camera_part(second)
            writer.write(part[:1500])
            await writer.drain()
            await asyncio.sleep(0.3)
            writer.write(part[1500:])
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url, give_up_timeout=1.0)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: len(recorder.frames) == 2)
        await reader.stop()

        assert recorder.frames == [first, second]
        assert recorder.failed == 0
        assert reader.metrics.read_timeouts > 0
        assert camera.connections == 1


class TestFailures:
    """Tests for lost and failed connections."""

    async def test_wrong_content_type(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(b"hello", content_type="text/plain"))
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url, restart_on_error=False)
        recorder = Recorder(reader)

        reader.start()
        await asyncio.wait_for(reader.join(), timeout=3.0)

        assert recorder.frames == []
        assert recorder.failed == 1
        assert reader.metrics.protocol_errors == 1
        assert reader.state == ReaderState.IDLE

    async def test_non_ascii_length_keeps_reconnecting(self, fake_camera):
        async def handler(reader, writer):
            writer.write(
                camera_head()
                + b"--camboundary\r\nContent-Type: image/jpeg\r\nContent-Length: \xb2\r\n\r\n"
            )
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url, give_up_timeout=0.3)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: camera.connections >= 2)

        assert reader.is_active
        assert recorder.frames == []
        assert recorder.failed >= 1
        await reader.stop()

    async def test_oversized_length_is_a_lost_connection(self, fake_camera):
        async def handler(reader, writer):
            writer.write(
                camera_head()
                + b"--camboundary\r\nContent-Type: image/jpeg\r\n"
                + b"Content-Length: 1000000000000\r\n\r\n"
            )
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: camera.connections >= 2)

        assert reader.is_active
        assert reader.metrics.protocol_errors >= 1
        assert reader.buffer_size == INITIAL_BUFFER_SIZE
        assert recorder.frames == []
        await reader.stop()

    async def test_unexpected_error_follows_reconnect_policy(self, fake_camera, monkeypatch):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(payload(1)))
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        def broken_capacity(needed):
            raise MemoryError()

        monkeypatch.setattr(reader, "_ensure_capacity", broken_capacity)

        reader.start()
        await wait_until(lambda: camera.connections >= 2)

        assert reader.is_active
        assert recorder.failed >= 1
        await reader.stop()

    async def test_give_up_then_reconnect(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head())
            await writer.drain()
            await reader.read()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url, give_up_timeout=0.4)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: camera.connections >= 2)

        assert recorder.failed == 1
        assert reader.metrics.reconnect_count == 1
        await reader.stop()

    async def test_camera_closes_stream(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(payload(1)))
            await writer.drain()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url, restart_on_error=False)
        recorder = Recorder(reader)

        reader.start()
        await asyncio.wait_for(reader.join(), timeout=3.0)

        assert recorder.frames == [payload(1)]
        assert recorder.closed == 1
        assert recorder.failed == 1
        assert reader.state == ReaderState.IDLE

    async def test_reconnects_after_close(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(payload(1)))
            await writer.drain()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: len(recorder.frames) >= 3)
        await reader.stop()

        assert camera.connections >= 3
        assert recorder.closed >= 2

    async def test_truncated_body_counts_missed_frame(self, fake_camera):
        async def handler(reader, writer):
            part = camera_part(payload(1, size=2000))
            writer.write(camera_head() + part[:500])
            await writer.drain()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url, restart_on_error=False)
        recorder = Recorder(reader)

        reader.start()
        await asyncio.wait_for(reader.join(), timeout=3.0)

        assert recorder.frames == []
        assert reader.metrics.frames_missed == 1
        assert recorder.failed == 1

    async def test_http_error_status(self, fake_camera):
        async def handler(reader, writer):
            writer.write(b"HTTP/1.0 401 Unauthorized\r\nContent-Length: 0\r\n\r\n")
            await writer.drain()

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await asyncio.wait_for(reader.join(), timeout=3.0)

        assert recorder.failed == 1
        assert camera.connections == 1
        assert reader.state == ReaderState.IDLE

    async def test_connection_refused(self):
        reader = make_reader(f"http://127.0.0.1:{unused_port()}/video")
        recorder = Recorder(reader)

        reader.start()
        await asyncio.wait_for(reader.join(), timeout=3.0)

        assert recorder.failed == 1
        assert reader.metrics.connection_failures == 1
        assert reader.state == ReaderState.IDLE

    async def test_malformed_url_is_not_retried(self):
        reader = make_reader("camera.local/video")
        recorder = Recorder(reader)

        reader.start()
        await asyncio.wait_for(reader.join(), timeout=3.0)

        assert recorder.failed == 1
        assert reader.metrics.reconnect_count == 0
        assert reader.state == ReaderState.IDLE

    async def test_unknown_auth_scheme(self):
        reader = make_reader(
            "http://127.0.0.1:1/video",
            login="admin",
            password="secret",
            authentication="NTLM",
        )
        with pytest.raises(ConfigurationError):
            reader._build_auth()


class TestAuthentication:
    """Tests for credential handling."""

    @staticmethod
    async def streaming_handler(reader, writer):
        writer.write(camera_head() + camera_part(payload(1)))
        await writer.drain()
        await reader.read()

    async def test_basic_credentials_sent(self, fake_camera):
        camera = await fake_camera(self.streaming_handler)
        reader = make_reader(camera.url, login="admin", password="secret")
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: recorder.frames)
        await reader.stop()

        expected = base64.b64encode(b"admin:secret").decode("ascii")
        assert camera.requests[0]["authorization"] == f"Basic {expected}"

    async def test_no_credentials_without_login(self, fake_camera):
        camera = await fake_camera(self.streaming_handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: recorder.frames)
        await reader.stop()

        assert "authorization" not in camera.requests[0]


class TestControl:
    """Tests for pause, resume, stop and set_url."""

    async def test_pause_and_resume(self, fake_camera):
        sent = []

        async def handler(reader, writer):
            writer.write(camera_head())
            i = 0
            while not reader.at_eof():
                data = payload(i, size=800)
                sent.append(data)
                writer.write(camera_part(data))
                await writer.drain()
                await asyncio.sleep(0.01)
                i += 1

        camera = await fake_camera(handler)
        reader = make_reader(camera.url)
        recorder = Recorder(reader)

        reader.start()
        await wait_until(lambda: len(recorder.frames) >= 3)

        reader.pause()
        assert reader.state == ReaderState.PAUSED
        await asyncio.sleep(0.05)
        paused_count = len(recorder.frames)
        await asyncio.sleep(0.2)
        assert len(recorder.frames) == paused_count
        assert reader.is_streaming

        reader.resume()
        await wait_until(lambda: len(recorder.frames) >= paused_count + 3)
        await reader.stop()

        assert camera.connections == 1
        assert all(frame in sent for frame in recorder.frames)

    async def test_pause_ignored_when_not_streaming(self):
        reader = make_reader("http://127.0.0.1:1/video")
        reader.pause()
        assert reader.state == ReaderState.IDLE
        assert not reader.paused

    async def test_stop_is_idempotent(self):
        reader = make_reader("http://127.0.0.1:1/video")
        await reader.stop()
        await reader.stop()
        assert reader.state == ReaderState.CLOSED

    async def test_set_url_restarts_active_reader(self, fake_camera):
        async def handler(reader, writer):
            writer.write(camera_head() + camera_part(payload(1)))
            await writer.drain()
            await reader.read()

        first = await fake_camera(handler)
        second = await fake_camera(handler)

        reader = make_reader(first.url)
        recorder = Recorder(reader)
        reader.start()
        await wait_until(lambda: len(recorder.frames) == 1)

        await reader.set_url(second.url, login="user", password="pw")
        assert reader.url == second.url
        assert reader.login == "user"
        await wait_until(lambda: len(recorder.frames) == 2)
        await reader.stop()

        assert second.connections == 1

    async def test_set_url_keeps_idle_reader_idle(self):
        reader = make_reader("http://127.0.0.1:1/video")
        await reader.set_url("http://127.0.0.1:2/video")
        assert not reader.is_active
        assert reader.url == "http://127.0.0.1:2/video"

    async def test_terminate_releases_buffer(self):
        reader = make_reader("http://127.0.0.1:1/video")
        await reader.terminate()
        assert reader.buffer_size == 0
