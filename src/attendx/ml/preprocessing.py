"""Decoding and normalization of already-cropped face images.

Face detection and alignment happen upstream; these helpers only turn the
crop into a model input tensor and reject images that cannot yield a
usable embedding.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from attendx.errors import ExtractionError, LowImageQuality

if TYPE_CHECKING:
    from numpy.typing import NDArray

# Below this pixel standard deviation the crop is treated as blank or fully blurred.
MIN_PIXEL_STD: float = 4.0


def decode_face_crop(image_bytes: bytes, *, max_pixels: int, min_face_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an HxWx3 RGB uint8 array.

    Raises:
        ExtractionError: If the bytes are not a decodable image or exceed ``max_pixels``.
        LowImageQuality: If the crop is smaller than ``min_face_pixels`` on a
            side or is nearly uniform.
    """
    if not image_bytes:
        raise ExtractionError("Empty image")
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ExtractionError(f"Image has {width * height} pixels, limit is {max_pixels}")
            rgb = ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise ExtractionError(f"Image could not be decoded: {exc}") from None

    if min(rgb.size) < min_face_pixels:
        raise LowImageQuality(f"Face crop {rgb.size[0]}x{rgb.size[1]} is smaller than {min_face_pixels}px")

    face = np.asarray(rgb, dtype=np.uint8)
    if float(face.std()) < MIN_PIXEL_STD:
        raise LowImageQuality("Face crop is blank or too blurred")
    return face


def to_recognition_tensor(
    face: NDArray[np.uint8],
    input_size: tuple[int, int],
    mean: float,
    std: float,
) -> NDArray[np.float32]:
    """Resize a face crop and lay it out as a (1, 3, H, W) float32 batch."""
    resized = Image.fromarray(face).resize(input_size, Image.Resampling.BILINEAR)
    pixels = (np.asarray(resized, dtype=np.float32) - mean) / std
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...])
