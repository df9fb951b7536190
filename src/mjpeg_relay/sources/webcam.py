"""
Webcam Source
=============

Video source backed by a local camera through OpenCV.

Frames are grabbed by a daemon thread (cv2.VideoCapture.read blocks)
and JPEG-encoded lazily, once per new frame, when a producer asks for
them.
"""

import asyncio
import logging
import threading
from typing import Optional

import cv2
import numpy as np

from mjpeg_relay.sources.base import VideoSource
from mjpeg_relay.stream.image_decoder import encode_jpeg


logger = logging.getLogger(__name__)


# Consecutive failed reads before the capture thread gives up
MAX_READ_FAILURES = 50


class WebcamSource(VideoSource):
    """
    Frames from a local camera.

    Attributes:
        device_index: OpenCV camera index
        jpeg_quality: JPEG quality used by get_latest_jpeg()
        width: Requested capture width (None = device default)
        height: Requested capture height (None = device default)
    """

    def __init__(
        self,
        device_index: int = 0,
        jpeg_quality: int = 75,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> None:
        super().__init__()
        self.device_index = device_index
        self.jpeg_quality = jpeg_quality
        self.width = width
        self.height = height

        self._capture: Optional[cv2.VideoCapture] = None
        self._thread: Optional[threading.Thread] = None
        self._running = threading.Event()
        self._unpaused = threading.Event()
        self._unpaused.set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._lock = threading.Lock()
        self._image: Optional[np.ndarray] = None
        self._frame_seq: int = 0

        self._encode_lock = threading.Lock()
        self._jpeg: Optional[bytes] = None
        self._jpeg_seq: int = -1

    @classmethod
    def from_config(cls, config) -> "WebcamSource":
        """Build a source from a CaptureConfig section."""
        return cls(device_index=config.device_index, jpeg_quality=config.jpeg_quality)

    @property
    def initialized(self) -> bool:
        return self._capture is not None

    @property
    def playing(self) -> bool:
        return self.initialized and self._running.is_set() and self._unpaused.is_set()

    @property
    def paused(self) -> bool:
        return self.initialized and not self._unpaused.is_set()

    @property
    def current_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._image

    def get_latest_jpeg(self) -> Optional[bytes]:
        """
        Latest frame as JPEG.

        Encodes at most once per captured frame; repeated calls return
        the same bytes object until a new frame arrives.
        """
        with self._encode_lock:
            with self._lock:
                image, seq = self._image, self._frame_seq
            if image is None:
                return None
            if seq != self._jpeg_seq:
                self._jpeg = encode_jpeg(image, self.jpeg_quality)
                self._jpeg_seq = seq
            return self._jpeg

    # =========================================================================
    # Hooks
    # =========================================================================

    def _open_capture(self) -> Optional[cv2.VideoCapture]:
        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            return None
        if self.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return capture

    async def _initialize_video(self) -> bool:
        if self._capture is not None:
            return True
        self._capture = await asyncio.to_thread(self._open_capture)
        if self._capture is None:
            logger.error(f"Cannot open camera device {self.device_index}")
            return False
        logger.info(f"Camera device {self.device_index} opened")
        return True

    async def _terminate_video(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            await asyncio.to_thread(capture.release)
        with self._lock:
            self._image = None
        with self._encode_lock:
            self._jpeg = None
            self._jpeg_seq = -1

    async def _play_video(self) -> None:
        self._unpaused.set()
        if self._thread is not None and self._thread.is_alive():
            return
        self._loop = asyncio.get_running_loop()
        self._running.set()
        self._thread = threading.Thread(
            target=self._capture_loop,
            name=f"webcam-{self.device_index}",
            daemon=True,
        )
        self._thread.start()

    async def _pause_video(self) -> None:
        self._unpaused.clear()

    async def _stop_video(self) -> None:
        self._running.clear()
        self._unpaused.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            await asyncio.to_thread(thread.join, 2.0)

    # =========================================================================
    # Capture Thread
    # =========================================================================

    def _capture_loop(self) -> None:
        failures = 0
        while self._running.is_set():
            if not self._unpaused.wait(timeout=0.1):
                continue

            capture = self._capture
            if capture is None:
                break

            ok, image = capture.read()
            if not ok or image is None:
                failures += 1
                if failures >= MAX_READ_FAILURES:
                    logger.error(f"Camera device {self.device_index} stopped delivering frames")
                    break
                continue
            failures = 0

            with self._lock:
                self._image = image
                self._frame_seq += 1

            height, width = image.shape[:2]
            self._notify_frame(width, height)

        self._running.clear()
        logger.info(f"Capture thread for device {self.device_index} ended")

    def _notify_frame(self, width: int, height: int) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._on_frame_captured, width, height)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _on_frame_captured(self, width: int, height: int) -> None:
        self._update_frame_size(width, height)
        self.frame_updated.fire()
