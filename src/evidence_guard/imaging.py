"""Image decoding and tensor preparation shared by the image stages."""

from __future__ import annotations
from io import BytesIO
from typing import Any, Tuple

import numpy as np
from PIL import Image, ImageFile, ImageOps

from .errors import UnsupportedInputType

# Safety settings for Pillow
ImageFile.LOAD_TRUNCATED_IMAGES = True
Image.MAX_IMAGE_PIXELS = 64_000_000

ALLOWED_IMAGE_CT = {"image/png", "image/jpeg", "image/webp", "image/gif", "image/bmp"}


def _open_blob(blob: bytes) -> Image.Image:
    try:
        img = Image.open(BytesIO(blob))
        if getattr(img, "is_animated", False):
            img.seek(0)
        img = ImageOps.exif_transpose(img)
    except Image.DecompressionBombError as e:
        raise UnsupportedInputType(f"Image exceeds decompression limits: {e}") from e
    except Exception as e:
        raise UnsupportedInputType(f"Undecodable image data: {e}") from e
    return img


def to_pil(image: Any) -> Image.Image:
    """Converts any accepted image input into an RGB ``PIL.Image``.

    Accepted inputs are encoded image bytes, a ``PIL.Image`` and a ``uint8``
    pixel buffer shaped ``(H, W)``, ``(H, W, 3)`` or ``(H, W, 4)``.

    Raises:
        UnsupportedInputType: For anything else or for undecodable bytes.
    """
    if isinstance(image, (bytes, bytearray, memoryview)):
        img = _open_blob(bytes(image))
    elif isinstance(image, Image.Image):
        img = image
    elif isinstance(image, np.ndarray):
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (3, 4)):
            raise UnsupportedInputType(f"Unsupported pixel buffer shape {image.shape}")
        if image.size == 0:
            raise UnsupportedInputType("Empty pixel buffer")
        img = Image.fromarray(np.ascontiguousarray(image).astype(np.uint8))
    else:
        raise UnsupportedInputType(
            f"Unsupported image input type: {type(image).__name__}"
        )
    if img.width == 0 or img.height == 0:
        raise UnsupportedInputType("Image has no pixels")
    return img.convert("RGB")


def to_rgb_array(image: Any) -> np.ndarray:
    """Returns the image as an ``(H, W, 3)`` ``uint8`` array."""
    if isinstance(image, np.ndarray) and image.ndim == 3 and image.shape[2] == 3:
        if image.size == 0:
            raise UnsupportedInputType("Empty pixel buffer")
        return image.astype(np.uint8, copy=False)
    return np.asarray(to_pil(image), dtype=np.uint8)


def letterbox(pixels: np.ndarray, size: int) -> Tuple[np.ndarray, float, float, float]:
    """Resizes into a ``size`` x ``size`` square, preserving aspect ratio.

    The resized image is centered and padded with black.

    Returns:
        A tuple ``(tensor, scale, pad_x, pad_y)`` where ``tensor`` is a
        ``float32`` NCHW array in ``[0, 1]`` and a source pixel ``(x, y)`` maps
        to ``(x * scale + pad_x, y * scale + pad_y)`` in model space.
    """
    h, w = pixels.shape[:2]
    scale = min(size / w, size / h)
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    resized = Image.fromarray(pixels).resize((new_w, new_h), Image.Resampling.BILINEAR)
    canvas = Image.new("RGB", (size, size), (0, 0, 0))
    pad_x = (size - new_w) // 2
    pad_y = (size - new_h) // 2
    canvas.paste(resized, (pad_x, pad_y))
    tensor = np.asarray(canvas, dtype=np.float32) / 255.0
    tensor = tensor.transpose(2, 0, 1)[None, ...]
    return tensor, scale, float(pad_x), float(pad_y)


def downsample(pixels: np.ndarray, max_side: int) -> np.ndarray:
    """Shrinks ``pixels`` so neither side exceeds ``max_side``."""
    h, w = pixels.shape[:2]
    if max(h, w) <= max_side:
        return pixels
    img = Image.fromarray(pixels)
    img.thumbnail((max_side, max_side), Image.Resampling.BILINEAR)
    return np.asarray(img, dtype=np.uint8)
