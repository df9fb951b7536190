"""
IP Camera Source
================

Video source backed by a remote MJPEG camera.

Wraps an MJPEGStreamReader: every delivered JPEG is kept as-is (for
re-serving) and decoded off the event loop (for rendering and frame
size tracking).
"""

import asyncio
import logging
from typing import Optional

import numpy as np

from mjpeg_relay.sources.base import VideoSource
from mjpeg_relay.stream.image_decoder import ImageDecodeError, decode_jpeg
from mjpeg_relay.stream.reader import MJPEGStreamReader, ReaderState


logger = logging.getLogger(__name__)


class IPCameraSource(VideoSource):
    """
    Frames from a remote IP camera.

    Attributes:
        reader: The underlying stream reader
        decode: Decode frames to pixels (disable for pure relaying)
        decode_errors: Number of frames that failed to decode

    Notifications (besides VideoSource ones):
        connection_succeeded, connection_failed, connection_closed,
        forwarded from the reader
    """

    def __init__(
        self,
        url: str,
        login: Optional[str] = None,
        password: Optional[str] = None,
        decode: bool = True,
        **reader_options,
    ) -> None:
        """
        Args:
            url: Camera stream URL
            login: Optional login
            password: Optional password
            decode: Decode each frame with OpenCV
            **reader_options: Passed to MJPEGStreamReader
        """
        super().__init__()
        self.reader = MJPEGStreamReader(
            url,
            sink=self._on_jpeg,
            login=login,
            password=password,
            **reader_options,
        )
        self.decode = decode
        self.decode_errors: int = 0

        self.connection_succeeded = self.reader.connection_succeeded
        self.connection_failed = self.reader.connection_failed
        self.connection_closed = self.reader.connection_closed

        self._initialized: bool = False
        self._image: Optional[np.ndarray] = None
        self._jpeg: Optional[bytes] = None

    @classmethod
    def from_config(cls, config, decode: bool = True) -> "IPCameraSource":
        """Build a source from a ReaderConfig section."""
        return cls(
            url=config.url,
            login=config.login,
            password=config.password,
            decode=decode,
            authentication=config.authentication,
            restart_on_error=config.restart_on_error,
            read_timeout=config.read_timeout,
            give_up_timeout=config.give_up_timeout,
            reconnect_delay=config.reconnect_delay,
            connect_timeout=config.connect_timeout,
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def playing(self) -> bool:
        """True from play() until stop/pause, through connects and reconnects."""
        return self._initialized and self.reader.is_active and not self.reader.paused

    @property
    def connected(self) -> bool:
        """Whether frames are currently flowing from the camera."""
        return self._initialized and self.reader.state == ReaderState.STREAMING

    @property
    def paused(self) -> bool:
        return self._initialized and self.reader.paused

    @property
    def current_frame(self) -> Optional[np.ndarray]:
        return self._image

    def get_latest_jpeg(self) -> Optional[bytes]:
        """Latest JPEG exactly as received from the camera."""
        return self._jpeg

    async def set_url(
        self,
        url: str,
        login: Optional[str] = None,
        password: Optional[str] = None,
    ) -> None:
        """Change the camera address, restarting the stream if it was running."""
        await self.reader.set_url(url, login, password)

    async def _on_jpeg(self, data: bytes) -> None:
        self._jpeg = data
        if not self.decode:
            self.frame_updated.fire()
            return

        try:
            image = await asyncio.to_thread(decode_jpeg, data)
        except ImageDecodeError as e:
            self.decode_errors += 1
            logger.warning(f"Skipping undecodable frame: {e}")
            return

        self._image = image
        height, width = image.shape[:2]
        self._update_frame_size(width, height)
        self.frame_updated.fire()

    async def _initialize_video(self) -> bool:
        self._initialized = True
        return True

    async def _terminate_video(self) -> None:
        await self.reader.terminate()
        self._image = None
        self._jpeg = None
        self._initialized = False

    async def _play_video(self) -> None:
        if self.reader.paused:
            self.reader.resume()
        else:
            self.reader.start()

    async def _pause_video(self) -> None:
        self.reader.pause()

    async def _stop_video(self) -> None:
        await self.reader.stop()
