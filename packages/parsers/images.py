from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, ImageOps, UnidentifiedImageError


class ImageDecodeError(Exception):
    """Raised when bytes are not a decodable image."""


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str
    mode: str


def read_image_info(image_bytes: bytes) -> ImageInfo:
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            im.verify()
        # verify() leaves the image unusable; reopen for the attributes
        with Image.open(io.BytesIO(image_bytes)) as im:
            return ImageInfo(width=im.width, height=im.height, format=im.format or "unknown", mode=im.mode)
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageDecodeError(f"Image could not be decoded: {exc}") from exc


def render_thumbnail(image_bytes: bytes, max_size: int = 200, quality: int = 80) -> bytes:
    """JPEG thumbnail no larger than ``max_size`` on either side, aspect preserved."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            im = ImageOps.exif_transpose(im)
            im.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
            if im.mode not in ("RGB", "L"):
                im = im.convert("RGB")
            out = io.BytesIO()
            im.save(out, format="JPEG", quality=quality, optimize=True)
            return out.getvalue()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageDecodeError(f"Thumbnail could not be rendered: {exc}") from exc
