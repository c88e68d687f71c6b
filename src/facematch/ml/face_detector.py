"""Face detector contract.

The detector itself is supplied by the host application (ML Kit, RetinaFace,
SCRFD, ...). Only its output contract matters here.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


@dataclass(frozen=True)
class FaceRegion:
    """A detected face in the pixel space of the source image."""

    left: float
    top: float
    width: float
    height: float
    score: float = 1.0
    landmarks: NDArray[np.float32] | None = None

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height


class FaceDetector(Protocol):
    """Protocol for face detection backends."""

    def detect(self, image_bytes: bytes) -> list[FaceRegion]:
        """Detect faces in an encoded image.

        Args:
            image_bytes: Raw file bytes (any format the backend supports).

        Returns:
            Zero or more face regions. An empty list is not an error.
        """
        ...


def load_detector(reference: str) -> FaceDetector:
    """Instantiate a detector from a ``"package.module:attribute"`` reference.

    The attribute may be a class or a zero-argument factory.

    Raises:
        ValueError: The reference is malformed.
        ImportError: The module cannot be imported.
        AttributeError: The module has no such attribute.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Detector reference must look like 'package.module:attribute', got '{reference}'")
    factory = getattr(importlib.import_module(module_name), attribute)
    detector: FaceDetector = factory()
    return detector
