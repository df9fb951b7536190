"""
Streaming Orchestrator
======================

Feeds frames from a local source into the frame server.

Serve mode wiring:

    VideoSource.get_latest_jpeg() -> FrameBuffer -> MJPEGFrameServer -> clients

Design Rules:
    - The source is polled off the event loop (capture may block)
    - Only new JPEG objects are pushed to the buffer
    - When feeding ends the buffer is cleared so streaming clients
      see the end of the stream
"""

import asyncio
import logging
from typing import Optional

from mjpeg_relay.events import EventHook
from mjpeg_relay.server.frame_server import MJPEGFrameServer
from mjpeg_relay.sources.base import VideoSource


logger = logging.getLogger(__name__)


class StreamingOrchestrator:
    """
    Start/stop glue between a video source and a frame server.

    The source must also implement FrameProducer (get_latest_jpeg),
    as WebcamSource and IPCameraSource do.

    Attributes:
        source: Frame source
        server: Frame server
        poll_interval: Seconds between two polls of the source

    Notifications:
        streaming_started, streaming_stopped

    Example:
        orchestrator = StreamingOrchestrator(
            WebcamSource(device_index=0),
            MJPEGFrameServer(port=8080),
        )
        await orchestrator.start_server()
        ...
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        source: VideoSource,
        server: MJPEGFrameServer,
        poll_interval: float = 0.03,
    ) -> None:
        self.source = source
        self.server = server
        self.poll_interval = poll_interval

        self.streaming_started = EventHook("streaming_started")
        self.streaming_stopped = EventHook("streaming_stopped")

        self._feed_task: Optional[asyncio.Task] = None

    @property
    def streaming(self) -> bool:
        """Whether frames are currently fed to the server."""
        return self._feed_task is not None and not self._feed_task.done()

    async def start_server(self) -> int:
        """
        Start the source, the frame server and the feed.

        Returns:
            The port the server listens on.

        Raises:
            ServerBindError: If the server cannot bind its port
        """
        await self.source.play()
        try:
            port = await self.server.start()
        except Exception:
            await self.source.stop()
            raise

        self.start_streaming()
        self.streaming_started.fire()
        return port

    def start_streaming(self) -> None:
        """Start or resume feeding frames, if the server is listening."""
        if self.streaming or not self.server.listening:
            return
        self._feed_task = asyncio.get_running_loop().create_task(
            self._feed(),
            name="frame_feed",
        )

    async def pause_streaming(self) -> None:
        """Stop feeding frames; the server keeps listening."""
        task, self._feed_task = self._feed_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def stop_server(self) -> None:
        """Stop feeding, the frame server and the source."""
        await self.pause_streaming()
        if self.server.listening:
            await self.server.stop()
        await self.source.stop()
        self.streaming_stopped.fire()

    async def shutdown(self) -> None:
        """Stop everything and release the source."""
        await self.stop_server()
        await self.source.terminate()

    async def _feed(self) -> None:
        buffer = self.server.buffer
        last: Optional[bytes] = None
        try:
            while not self.source.playing:
                if not self.source.initialized:
                    logger.warning("Source not initialized, nothing to stream")
                    return
                await asyncio.sleep(self.poll_interval)

            while self.source.playing:
                jpeg = await asyncio.to_thread(self.source.get_latest_jpeg)
                if jpeg is not None and jpeg is not last:
                    last = jpeg
                    await buffer.put(jpeg)
                await asyncio.sleep(self.poll_interval)
        finally:
            await buffer.clear()
            logger.info("End of video streaming")
