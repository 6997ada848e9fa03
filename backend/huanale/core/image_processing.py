"""Bill image preparation before the bytes are inlined into a model call.

Clients compress photos before upload, but the server still bounds what it
forwards: oversized images are auto-oriented, downscaled and re-encoded as
JPEG using Pillow.
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

JPEG_QUALITY = 85

# Pillow format name -> MIME type for formats vision models accept as-is.
_PASSTHROUGH_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


@dataclass
class PreparedImage:
    content: bytes
    content_type: str

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


def _to_jpeg(img: Image.Image, max_side: int) -> bytes:
    resized = img.convert("RGB") if img.mode != "RGB" else img.copy()
    resized.thumbnail((max_side, max_side), Image.LANCZOS)
    buf = io.BytesIO()
    resized.save(buf, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    return buf.getvalue()


def prepare_bill_image(
    content: bytes,
    content_type: str = "image/jpeg",
    *,
    max_bytes: int = 4 * 1024 * 1024,
    max_side: int = 2048,
) -> PreparedImage:
    """Return bytes safe to send to a vision model.

    Small images in a common format pass through untouched (with their MIME
    type taken from the decoded format). Anything larger than *max_bytes*,
    wider/taller than *max_side*, or in another format is re-encoded as JPEG.
    Bytes Pillow cannot decode are forwarded unchanged with *content_type*.
    """
    try:
        img = Image.open(io.BytesIO(content))
        img.load()
    except (UnidentifiedImageError, OSError):
        logger.warning("Could not decode bill image (%d bytes); forwarding as-is", len(content))
        return PreparedImage(content=content, content_type=content_type)

    fmt = (img.format or "").upper()
    within_limits = len(content) <= max_bytes and max(img.size) <= max_side
    if fmt in _PASSTHROUGH_FORMATS and within_limits:
        return PreparedImage(content=content, content_type=_PASSTHROUGH_FORMATS[fmt])

    img = ImageOps.exif_transpose(img)
    encoded = _to_jpeg(img, max_side)
    logger.info(
        "Re-encoded bill image %s %sx%s: %d -> %d bytes",
        fmt or "unknown",
        img.width,
        img.height,
        len(content),
        len(encoded),
    )
    return PreparedImage(content=encoded, content_type="image/jpeg")
