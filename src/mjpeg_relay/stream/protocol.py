"""
MJPEG Part Protocol
===================

Parsing of the per-part MIME headers of a multipart/x-mixed-replace body,
and the byte layout the frame server writes for each part.

Inbound part layout (what cameras send):

    [--boundary or blank line] CRLF
    Content-Type: image/jpeg CRLF
    Content-Length: <decimal> CRLF
    CRLF
    <exactly Content-Length bytes of JPEG>

No trailing delimiter after the body is required or consumed; whatever
precedes the next header block is swallowed as part of that block.

Design Rules:
    - Header tags are matched case-insensitively
    - A value runs from the tag to the next carriage return
    - Missing or non-numeric Content-Length means "no frame yet"
    - A declared length above MAX_CONTENT_LENGTH is a protocol violation
    - Any Content-Type other than image/jpeg is a protocol violation;
      a part without a Content-Type is accepted
"""

import logging
from dataclasses import dataclass
from typing import Optional


logger = logging.getLogger(__name__)


HEADER_TERMINATOR = b"\r\n\r\n"
CONTENT_LENGTH_TAG = "Content-Length:"
CONTENT_TYPE_TAG = "Content-Type:"
JPEG_CONTENT_TYPE = "image/jpeg"

# Part boundary written by the frame server
BOUNDARY = "mjpegrelayframe"
MULTIPART_CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={BOUNDARY}"

# Largest frame accepted from a camera (64 MiB)
MAX_CONTENT_LENGTH = 64 * 1024 * 1024


class ProtocolError(Exception):
    """Raised when the remote endpoint does not speak the expected format."""
    pass


class UnsupportedContentType(ProtocolError):
    """Raised when a part declares a content type other than image/jpeg."""

    def __init__(self, content_type: Optional[str]) -> None:
        super().__init__(f"Content type not supported: {content_type}")
        self.content_type = content_type


class FrameTooLarge(ProtocolError):
    """Raised when a part declares an implausibly large body."""

    def __init__(self, content_length: int) -> None:
        super().__init__(f"Declared frame size too large: {content_length} bytes")
        self.content_length = content_length


@dataclass(frozen=True, slots=True)
class PartHeader:
    """
    Values extracted from one part header block.

    Attributes:
        content_length: Declared body length, None if missing or invalid
        content_type: Declared content type, None if missing
        raw: The header block as text (for logging)
    """

    content_length: Optional[int]
    content_type: Optional[str]
    raw: str

    @property
    def is_jpeg(self) -> bool:
        return (
            self.content_type is not None
            and self.content_type.lower() == JPEG_CONTENT_TYPE
        )


def extract_header_value(header: str, tag: str) -> Optional[str]:
    """
    Extract a value from header text.

    Args:
        header: Header block text
        tag: Tag to look for, including the colon (e.g. "Content-Length:")

    Returns:
        The trimmed value, or None if the tag or the terminating
        carriage return is not found.
    """
    tag_idx = header.lower().find(tag.lower())
    if tag_idx == -1:
        return None

    value_idx = tag_idx + len(tag)
    cr_idx = header.find("\r", value_idx)
    if cr_idx == -1:
        return None

    return header[value_idx:cr_idx].strip()


def parse_part_header(block: bytes) -> PartHeader:
    """
    Parse a raw header block.

    Args:
        block: Bytes up to and including the blank line ending the headers

    Returns:
        PartHeader with whatever values were found
    """
    header = block.decode("latin-1")

    content_length: Optional[int] = None
    length_value = extract_header_value(header, CONTENT_LENGTH_TAG)
    # Only ASCII digits; latin-1 text also holds characters like '²'
    if length_value and length_value.isascii() and length_value.isdecimal():
        content_length = int(length_value)

    return PartHeader(
        content_length=content_length,
        content_type=extract_header_value(header, CONTENT_TYPE_TAG),
        raw=header,
    )


def validate_part_header(
    header: PartHeader,
    max_length: int = MAX_CONTENT_LENGTH,
) -> None:
    """
    Check that a part can carry a JPEG image.

    Raises:
        UnsupportedContentType: If the declared content type is not image/jpeg
        FrameTooLarge: If the declared length exceeds `max_length`
    """
    if header.content_type is None:
        if header.content_length is not None:
            logger.debug("Part without Content-Type, assuming image/jpeg")
    elif not header.is_jpeg:
        raise UnsupportedContentType(header.content_type)

    if header.content_length is not None and header.content_length > max_length:
        raise FrameTooLarge(header.content_length)


def encode_part(data: bytes) -> bytes:
    """
    Build one multipart part for the frame server.

    Args:
        data: JPEG bytes

    Returns:
        Boundary line, part headers, blank line, body and trailing CRLF
    """
    head = (
        f"--{BOUNDARY}\r\n"
        f"Content-Type: {JPEG_CONTENT_TYPE}\r\n"
        f"Content-Length: {len(data)}\r\n"
        f"\r\n"
    ).encode("ascii")
    return head + data + b"\r\n"
