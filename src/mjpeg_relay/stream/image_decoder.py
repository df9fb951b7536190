"""
Image Decoder
=============

JPEG encode/decode collaborator backed by OpenCV.

The reader and the server move JPEG bytes around without looking
inside them. This module is the one place that turns those bytes into
pixels (for sources that render or measure frames) and pixels back
into JPEG (for local capture).

Design Rules:
    - This is the ONLY place in the codebase that touches pixel data
    - Validates shape and dtype
    - Fails fast on corrupt frames
"""

import logging
from typing import Optional, Tuple

import cv2
import numpy as np


logger = logging.getLogger(__name__)


class ImageDecodeError(Exception):
    """Raised when image decoding fails."""
    pass


class ImageEncodeError(Exception):
    """Raised when image encoding fails."""
    pass


def decode_jpeg(data: bytes) -> np.ndarray:
    """
    Decode JPEG bytes to a BGR numpy array.

    Args:
        data: JPEG bytes

    Returns:
        BGR image as np.ndarray (H, W, 3), dtype=uint8

    Raises:
        ImageDecodeError: If decoding fails or image is invalid
    """
    if not data:
        raise ImageDecodeError("Empty frame")

    nparr = np.frombuffer(data, np.uint8)
    try:
        bgr = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageDecodeError(f"cv2.imdecode failed: {e}")

    if bgr is None:
        raise ImageDecodeError(
            f"Failed to decode {len(data)} bytes: cv2.imdecode returned None"
        )

    if len(bgr.shape) != 3 or bgr.shape[2] != 3:
        raise ImageDecodeError(f"Invalid image shape: {bgr.shape}")

    if bgr.dtype != np.uint8:
        raise ImageDecodeError(f"Invalid dtype: {bgr.dtype}")

    return bgr


def encode_jpeg(image: np.ndarray, quality: int = 75) -> bytes:
    """
    Encode a BGR image to JPEG bytes.

    Args:
        image: BGR image (H, W, 3) or grayscale (H, W)
        quality: JPEG quality, 1-100

    Returns:
        JPEG bytes

    Raises:
        ImageEncodeError: If OpenCV cannot encode the image
    """
    ok, buf = cv2.imencode(
        ".jpg", image,
        [cv2.IMWRITE_JPEG_QUALITY, int(quality)],
    )
    if not ok:
        raise ImageEncodeError(f"cv2.imencode failed for shape {image.shape}")
    return buf.tobytes()


def get_frame_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    """
    Get frame dimensions.

    Args:
        data: JPEG bytes

    Returns:
        Tuple of (width, height) or None if decode fails
    """
    try:
        image = decode_jpeg(data)
    except ImageDecodeError:
        return None
    height, width = image.shape[:2]
    return width, height
