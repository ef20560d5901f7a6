"""Resize helpers for the in-process encoder, matching cwebp's -resize rules."""
import logging
from typing import Optional

from PIL import Image

logger = logging.getLogger("converter.resize")


def resize_keep_aspect(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """
    Scale image to the given width or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    """
    w, h = img.size
    if not target_width and not target_height:
        return img.copy()
    if target_width:
        scale = target_width / w
    else:
        scale = target_height / h
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return img.resize((new_w, new_h), Image.Resampling.LANCZOS)


def apply_resize(img: Image.Image, resize: Optional[tuple[int, int]]) -> Image.Image:
    """
    Apply a (width, height) resize directive where 0 means "auto" on that axis.
    - both set: exact size, aspect ratio not preserved.
    - one set: the other axis follows the source ratio.
    - None or (0, 0): unchanged.
    """
    if resize is None:
        return img
    width, height = resize
    if width and height:
        if img.size == (width, height):
            return img
        return img.resize((width, height), Image.Resampling.LANCZOS)
    if width or height:
        return resize_keep_aspect(img, target_width=width or None, target_height=height or None)
    logger.debug("Resize directive (0, 0) ignored")
    return img
