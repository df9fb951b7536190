"""
Sources Module
==============

Pluggable video sources:
    - VideoSource: abstract capability (initialize, play, pause, stop,
      terminate, current_frame, frame_size)
    - IPCameraSource: remote MJPEG camera
    - WebcamSource: local camera through OpenCV
    - FrameProducer: protocol for anything that can feed a FrameBuffer
"""

from mjpeg_relay.sources.base import FrameProducer, VideoSource
from mjpeg_relay.sources.ip_camera import IPCameraSource
from mjpeg_relay.sources.webcam import WebcamSource


__all__ = [
    "FrameProducer",
    "IPCameraSource",
    "VideoSource",
    "WebcamSource",
]
