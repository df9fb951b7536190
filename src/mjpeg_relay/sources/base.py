"""
Video Source
============

Pluggable frame source capability shared by the remote camera and the
local webcam.

Design Rules:
    - play() initializes on demand
    - pause() only acts while playing, stop() while playing or paused
    - terminate() stops and releases resources
    - Every transition fires its notification after it succeeded
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Protocol, Tuple

import numpy as np

from mjpeg_relay.events import EventHook


logger = logging.getLogger(__name__)


class FrameProducer(Protocol):
    """
    Protocol for local frame producers feeding a FrameBuffer.

    Implemented by WebcamSource and IPCameraSource.
    """

    @property
    def playing(self) -> bool:
        ...

    def get_latest_jpeg(self) -> Optional[bytes]:
        """
        Latest frame as JPEG bytes.

        Returns the same object until a new frame is available,
        None if no frame was produced yet.
        """
        ...


class VideoSource(ABC):
    """
    Abstract video source.

    Subclasses implement the _*_video hooks; the public methods take
    care of state checks and notifications.

    Notifications:
        initialized, played, paused_event, stopped, terminated,
        frame_updated, frame_resized
    """

    def __init__(self) -> None:
        self.initialized_event = EventHook("initialized")
        self.played = EventHook("played")
        self.paused_event = EventHook("paused")
        self.stopped = EventHook("stopped")
        self.terminated = EventHook("terminated")
        self.frame_updated = EventHook("frame_updated")
        self.frame_resized = EventHook("frame_resized")

        self._frame_size: Tuple[int, int] = (0, 0)

    # =========================================================================
    # State (implemented by subclasses)
    # =========================================================================

    @property
    @abstractmethod
    def initialized(self) -> bool:
        ...

    @property
    @abstractmethod
    def playing(self) -> bool:
        ...

    @property
    @abstractmethod
    def paused(self) -> bool:
        ...

    @property
    @abstractmethod
    def current_frame(self) -> Optional[np.ndarray]:
        """Latest decoded frame (BGR), None before the first one."""
        ...

    @property
    def frame_size(self) -> Tuple[int, int]:
        """(width, height) of the latest frame, (0, 0) before the first one."""
        return self._frame_size

    # =========================================================================
    # Hooks
    # =========================================================================

    @abstractmethod
    async def _initialize_video(self) -> bool:
        ...

    @abstractmethod
    async def _terminate_video(self) -> None:
        ...

    @abstractmethod
    async def _play_video(self) -> None:
        ...

    @abstractmethod
    async def _pause_video(self) -> None:
        ...

    @abstractmethod
    async def _stop_video(self) -> None:
        ...

    # =========================================================================
    # Public API
    # =========================================================================

    async def initialize(self) -> bool:
        """
        Initialize the source.

        Returns:
            True on success, False on failure.
        """
        if not await self._initialize_video():
            logger.error(f"{type(self).__name__} failed to initialize")
            return False
        self.initialized_event.fire()
        return True

    async def play(self) -> None:
        """Play frames, initializing first if needed."""
        if not self.initialized:
            await self.initialize()
        if self.initialized:
            await self._play_video()
            self.played.fire()

    async def pause(self) -> None:
        if self.initialized and self.playing and not self.paused:
            await self._pause_video()
            self.paused_event.fire()

    async def stop(self) -> None:
        if self.initialized and (self.playing or self.paused):
            await self._stop_video()
            self.stopped.fire()

    async def terminate(self) -> None:
        """Stop and release resources."""
        if self.initialized:
            await self.stop()
            await self._terminate_video()
            self.terminated.fire()

    def _update_frame_size(self, width: int, height: int) -> None:
        """Record the frame size, firing frame_resized when it changes."""
        if (width, height) != self._frame_size:
            self._frame_size = (width, height)
            logger.info(f"{type(self).__name__} frame size: {width}x{height}")
            self.frame_resized.fire()
