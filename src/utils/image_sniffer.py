"""
Magic-byte classification of icon payloads.

This is the single source of truth for "is this actually an image": the icon
cache uses it both to accept or reject downloads and to pick the MIME type of
an inline data URL.
"""

from enum import Enum
from typing import Optional


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
GIF_SIGNATURE = b"GIF8"  # GIF87a or GIF89a
JPEG_SIGNATURE = b"\xff\xd8\xff"
ICO_SIGNATURE = b"\x00\x00\x01\x00"  # reserved, type, count
PNG_IEND = b"IEND\xaeB`\x82"


class ImageFormat(Enum):
    """Image formats recognized by the sniffer"""
    PNG = "png"
    GIF = "gif"
    JPEG = "jpeg"
    ICO = "ico"
    UNKNOWN = "unknown"


MIME_TYPES = {
    ImageFormat.PNG: "image/png",
    ImageFormat.GIF: "image/gif",
    ImageFormat.JPEG: "image/jpeg",
    ImageFormat.ICO: "image/x-icon",
}


def is_icon_url(url: Optional[str]) -> bool:
    """Whether a URL or path hints at a favicon (lenient ICO acceptance)."""
    if not url:
        return False
    url_lower = url.lower()
    return "favicon" in url_lower or url_lower.endswith(".ico")


def classify(data: Optional[bytes], url_hint: Optional[str] = None) -> ImageFormat:
    """
    Classify a byte buffer by its signature.

    Checked in order, first match wins: PNG, GIF, JPEG, ICO header, embedded
    PNG stream (PNG-in-ICO containers), and finally an icon-looking URL hint,
    which is accepted as ICO even without a matching header because many
    servers send non-conformant favicons.

    Args:
        data: Raw bytes to inspect
        url_hint: URL or path the bytes came from

    Returns:
        The detected ImageFormat; UNKNOWN for empty buffers regardless of hint
    """
    if not data:
        return ImageFormat.UNKNOWN

    if data[:8] == PNG_SIGNATURE:
        return ImageFormat.PNG
    if data[:4] == GIF_SIGNATURE:
        return ImageFormat.GIF
    if data[:3] == JPEG_SIGNATURE:
        return ImageFormat.JPEG
    if data[:4] == ICO_SIGNATURE:
        return ImageFormat.ICO
    if PNG_SIGNATURE in data:
        return ImageFormat.ICO
    if is_icon_url(url_hint):
        return ImageFormat.ICO

    return ImageFormat.UNKNOWN


def is_valid_image(data: Optional[bytes], url_hint: Optional[str] = None) -> bool:
    return classify(data, url_hint) is not ImageFormat.UNKNOWN


def mime_type_for(data: Optional[bytes], url_hint: Optional[str] = None) -> str:
    """
    MIME type for an inline representation.

    Leniently accepted ICO payloads with no real header fall back to PNG,
    like any other inconclusive classification.
    """
    image_format = classify(data, url_hint)
    if image_format is ImageFormat.ICO and not _has_ico_header(data):
        return MIME_TYPES[ImageFormat.PNG]
    return MIME_TYPES.get(image_format, MIME_TYPES[ImageFormat.PNG])


def extract_embedded_png(data: Optional[bytes]) -> Optional[bytes]:
    """Return the first complete PNG stream embedded in an ICO container, if any."""
    if not data:
        return None
    start = data.find(PNG_SIGNATURE)
    if start == -1:
        return None
    iend = data.find(PNG_IEND, start)
    if iend == -1:
        return None
    return data[start:iend + len(PNG_IEND)]


def _has_ico_header(data: Optional[bytes]) -> bool:
    return bool(data) and data[:4] == ICO_SIGNATURE
