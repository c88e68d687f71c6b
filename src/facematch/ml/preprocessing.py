"""Image preprocessing for the embedding model.

Decodes an image, crops a square around a detected face with a margin,
resizes it to the model input size and scales RGB values as
``(pixel - mean) / std`` into a flat float32 buffer in HWC order.
"""

from __future__ import annotations

import io
import math
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from facematch.ml.tensor_adapter import DEFAULT_MEAN, DEFAULT_STD

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from facematch.ml.face_detector import FaceRegion
    from facematch.types import ImageRef

DEFAULT_MARGIN = 1.4


def load_image_bytes(image: ImageRef) -> bytes:
    """Return the encoded bytes behind an image reference."""
    if isinstance(image, bytes | bytearray):
        return bytes(image)
    return Path(image).read_bytes()


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


class FacePreprocessor:
    """Crops, resizes and scales faces for an embedding model."""

    def __init__(self, *, margin: float = DEFAULT_MARGIN, mean: float = DEFAULT_MEAN, std: float = DEFAULT_STD) -> None:
        self.margin = margin
        self.mean = mean
        self.std = std

    @staticmethod
    def decode_image(image_bytes: bytes) -> Image.Image:
        """Decode raw image bytes into an RGB image.

        EXIF orientation is not applied; detector boxes refer to
        the stored pixel grid.

        Raises:
            ValueError: If the bytes cannot be decoded.
        """
        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                return img.convert("RGB")
        except (UnidentifiedImageError, OSError) as exc:
            raise ValueError("Could not decode image bytes") from exc

    def crop_box(self, face: FaceRegion, image_width: int, image_height: int) -> tuple[int, int, int, int]:
        """Square crop box ``(left, top, right, bottom)`` around ``face``, clamped to the image."""
        cx = (face.left + face.right) / 2.0
        cy = (face.top + face.bottom) / 2.0
        side = max(face.width, face.height) * self.margin

        left = max(_round_half_away(cx - side / 2), 0)
        top = max(_round_half_away(cy - side / 2), 0)
        width = _round_half_away(side)
        height = width
        if left + width > image_width:
            width = image_width - left
        if top + height > image_height:
            height = image_height - top
        if width <= 0 or height <= 0:
            return 0, 0, image_width, image_height
        return left, top, left + width, top + height

    def preprocess(self, image: Image.Image, face: FaceRegion, input_size: int) -> NDArray[np.float32]:
        """Crop ``face`` out of ``image`` and return the flat model input buffer."""
        cropped = image.crop(self.crop_box(face, image.width, image.height))
        resized = ImageOps.fit(cropped, (input_size, input_size), method=Image.Resampling.BILINEAR)
        pixels = np.asarray(resized, dtype=np.float32)
        return ((pixels - self.mean) / self.std).reshape(-1)
