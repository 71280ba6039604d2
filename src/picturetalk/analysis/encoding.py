"""Upload encoding for analysis images."""

from __future__ import annotations

import io
import logging
import uuid
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from picturetalk.analysis.client import ImageEncodingError

logger = logging.getLogger(__name__)

# (Pillow format, extension, content type), most compact first
UPLOAD_FORMATS: tuple[tuple[str, str, str], ...] = (
    ("WEBP", ".webp", "image/webp"),
    ("PNG", ".png", "image/png"),
    ("JPEG", ".jpg", "image/jpeg"),
)


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    extension: str
    content_type: str
    width: int
    height: int
    file_name: str

    @property
    def size(self) -> int:
        return len(self.data)


def _encode(img: Image.Image, fmt: str) -> bytes:
    buf = io.BytesIO()
    if fmt == "JPEG":
        img = img.convert("RGB")
        img.save(buf, format=fmt, quality=100)
    else:
        img.save(buf, format=fmt)
    return buf.getvalue()


def encode_for_upload(
    image: bytes,
    formats: tuple[tuple[str, str, str], ...] = UPLOAD_FORMATS,
) -> EncodedImage:
    """Encode raw image bytes, trying each format in turn.

    The file name is a fresh unique name plus the chosen extension.

    Raises:
        ImageEncodingError: The bytes are not an image, or no format worked.
    """
    if not image:
        raise ImageEncodingError("No image data")
    try:
        with Image.open(io.BytesIO(image)) as img:
            img.load()
            width, height = img.size
            for fmt, ext, content_type in formats:
                try:
                    data = _encode(img, fmt)
                except (KeyError, OSError, ValueError) as e:
                    logger.debug("Encoding as %s failed: %s", fmt, e)
                    continue
                return EncodedImage(
                    data=data,
                    extension=ext,
                    content_type=content_type,
                    width=width,
                    height=height,
                    file_name=uuid.uuid4().hex + ext,
                )
    except (UnidentifiedImageError, OSError) as e:
        raise ImageEncodingError(f"Cannot read image: {e}") from e
    raise ImageEncodingError("Image could not be encoded in any supported format")
