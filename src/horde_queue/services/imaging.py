"""Format detection and thumbnailing for downloaded result images.

The Horde serves WebP by default but workers may return PNG or JPEG, and the
URL extension is not reliable, so the format is always read from the bytes.
"""

import io
import logging

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = 512
THUMBNAIL_QUALITY = 85

# Pillow format name → file extension
_EXTENSIONS = {
    "JPEG": "jpg",
    "MPO": "jpg",  # multi-picture JPEG written by some cameras
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
}


def sniff_format(data: bytes) -> str:
    """Return the Pillow format name of an encoded image (e.g. ``"WEBP"``).

    Raises:
        PIL.UnidentifiedImageError: when the bytes are not a known image.
    """
    with Image.open(io.BytesIO(data)) as img:
        return img.format or ""


def extension_for(image_format: str) -> str:
    """Map a Pillow format name to a file extension; JPEG variants become ``jpg``."""
    fmt = image_format.upper()
    if fmt in _EXTENSIONS:
        return _EXTENSIONS[fmt]
    if not fmt:
        raise ValueError("Unknown image format")
    return fmt.lower()


def make_thumbnail(
    data: bytes,
    size: int = THUMBNAIL_SIZE,
    quality: int = THUMBNAIL_QUALITY,
) -> bytes:
    """Produce a square, center-cropped JPEG thumbnail of ``size`` x ``size``."""
    with Image.open(io.BytesIO(data)) as img:
        # Animated formats: thumbnail the first frame only
        img.seek(0)
        frame = img.convert("RGB") if img.mode not in ("RGB", "L") else img.copy()

    thumb = ImageOps.fit(
        frame, (size, size), method=Image.LANCZOS, centering=(0.5, 0.5)
    )
    buf = io.BytesIO()
    thumb.save(buf, format="JPEG", quality=quality, optimize=True)
    logger.debug("Thumbnail %dx%d → %d bytes", size, size, buf.tell())
    return buf.getvalue()
