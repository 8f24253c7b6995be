"""Thumbnail resize and format conversion with Pillow."""

from __future__ import annotations

import io
import logging
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from ..errors import StorageWriteError
from ..types.storage import ThumbnailSink

__all__ = ["transform_thumbnail", "target_size"]

logger = logging.getLogger(__name__)

_FILTERS = {
    "Nearest": Image.Resampling.NEAREST,
    "Triangle": Image.Resampling.BILINEAR,
    "CatmullRom": Image.Resampling.BICUBIC,
    "Gaussian": Image.Resampling.BOX,
    "Lanczos3": Image.Resampling.LANCZOS,
}

# Pillow format names and the modes each can encode.
_FORMATS = {
    "jpg": ("JPEG", ("RGB", "L")),
    "png": ("PNG", None),
    "webp": ("WEBP", None),
    "bmp": ("BMP", ("RGB", "L", "1")),
    "gif": ("GIF", None),
    "ico": ("ICO", None),
    "pgm": ("PPM", ("L",)),
}


def target_size(
    original: Tuple[int, int], width: Optional[int], height: Optional[int]
) -> Tuple[int, int]:
    """Compute the output size, preserving aspect ratio when one side is unset.

    Examples:
        >>> target_size((1280, 720), 640, None)
        (640, 360)
        >>> target_size((1280, 720), None, None)
        (1280, 720)
    """
    src_w, src_h = original
    if width and height:
        return width, height
    if width:
        return width, max(1, round(src_h * width / src_w))
    if height:
        return max(1, round(src_w * height / src_h)), height
    return original


def transform_thumbnail(data: bytes, sink: ThumbnailSink, source_ext: str) -> Tuple[bytes, str]:
    """Resize and re-encode a thumbnail for ``sink``.

    Args:
        data: Original image bytes
        sink: Sink carrying optional ``width``, ``height``, ``format`` and ``filter``
        source_ext: Extension of the original image, used when no format is set

    Returns:
        ``(payload, ext)`` for the key template. The input is returned unchanged
        when the sink asks for neither resizing nor conversion.

    Raises:
        StorageWriteError: If the image cannot be decoded or encoded.
    """
    if sink.width is None and sink.height is None and sink.format in (None, source_ext):
        return data, source_ext

    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            size = target_size(image.size, sink.width, sink.height)
            if size != image.size:
                image = image.resize(size, _FILTERS[sink.filter])
            ext = sink.format or source_ext
            pil_format, modes = _FORMATS.get(ext, (image.format or "PNG", None))
            if modes is not None and image.mode not in modes:
                image = image.convert(modes[0])
            out = io.BytesIO()
            image.save(out, format=pil_format)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise StorageWriteError(f"thumbnail conversion to {sink.format or source_ext} failed: {e}") from e
    logger.debug(f"Thumbnail transformed to {size[0]}x{size[1]} {ext}")
    return out.getvalue(), ext
