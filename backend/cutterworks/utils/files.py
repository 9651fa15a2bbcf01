import struct
from io import BytesIO
from typing import Optional

from PIL import Image, UnidentifiedImageError

SUPPORTED_IMAGE_FORMATS = {"JPEG", "PNG", "GIF", "WEBP", "BMP", "TIFF"}


def detect_image_format(content: bytes) -> Optional[str]:
    """Return the Pillow format name of `content`, or None if it is not a supported image."""
    try:
        img = Image.open(BytesIO(content))
        fmt = img.format
        img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return fmt if fmt in SUPPORTED_IMAGE_FORMATS else None


def looks_like_stl(content: bytes, filename: str) -> bool:
    if not (filename or "").lower().endswith(".stl") or len(content) < 15:
        return False
    if content[:5].lower() == b"solid":
        return True
    # binary STL: 80 byte header, uint32 triangle count, 50 bytes per triangle
    if len(content) < 84:
        return False
    (count,) = struct.unpack("<I", content[80:84])
    return len(content) == 84 + count * 50
