"""Image decoding and encoding.

Input and output images travel as ``ImageRecord`` values: raw encoded bytes
plus a declared MIME type. Decoded rasters are HxWx3 BGR uint8 arrays, the
layout OpenCV and the detector both expect.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import cv2
import numpy as np

from alignx.alignment.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray


_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


@dataclass(frozen=True)
class ImageRecord:
    """Encoded image bytes with their MIME type."""

    data: bytes
    mime_type: str
    name: str = ""

    def with_content(self, data: bytes, mime_type: str) -> ImageRecord:
        """Return a copy carrying new bytes and MIME type."""
        return replace(self, data=data, mime_type=mime_type)


def decode_image(record: ImageRecord, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode an image record into a BGR uint8 array.

    EXIF orientation is applied by OpenCV. Grayscale and alpha inputs are
    converted to three channels.

    Raises:
        ImageDecodeError: If the bytes are empty, undecodable, or the image
            exceeds ``max_pixels``.
    """
    if not record.data:
        raise ImageDecodeError(f"Empty image payload{_label(record)}")

    buffer = np.frombuffer(record.data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise ImageDecodeError(f"Could not decode image{_label(record)} ({record.mime_type})")

    height, width = image.shape[:2]
    if max_pixels is not None and height * width > max_pixels:
        raise ImageDecodeError(f"Image{_label(record)} has {width}x{height} pixels, limit is {max_pixels}")
    return image


def encode_image(image: NDArray[np.uint8], mime_type: str = "image/jpeg", quality: int = 92) -> bytes:
    """Encode a BGR array to bytes in the requested format.

    ``quality`` applies to JPEG and WebP and is ignored for PNG.
    """
    try:
        extension = _EXTENSIONS[mime_type]
    except KeyError:
        raise ValueError(f"Unsupported output format: {mime_type}") from None

    params: list[int] = []
    if mime_type == "image/jpeg":
        params = [cv2.IMWRITE_JPEG_QUALITY, quality]
    elif mime_type == "image/webp":
        params = [cv2.IMWRITE_WEBP_QUALITY, quality]

    ok, encoded = cv2.imencode(extension, image, params)
    if not ok:
        raise RuntimeError(f"Failed to encode image as {mime_type}")
    return encoded.tobytes()


def parse_hex_color(color: str) -> tuple[int, int, int]:
    """Convert ``#RRGGBB`` into an OpenCV BGR tuple."""
    value = color.lstrip("#")
    if len(value) != 6:
        raise ValueError(f"Expected a #RRGGBB color, got {color!r}")
    try:
        red, green, blue = (int(value[i : i + 2], 16) for i in (0, 2, 4))
    except ValueError:
        raise ValueError(f"Expected a #RRGGBB color, got {color!r}") from None
    return blue, green, red


def _label(record: ImageRecord) -> str:
    return f" '{record.name}'" if record.name else ""
