"""Exception hierarchy for FaceMatch.

Registration paths raise these to the caller. Verification paths catch them at
the operation boundary and degrade to a no-match result.
"""

from __future__ import annotations


class FaceMatchError(Exception):
    """Base class for all FaceMatch errors."""


class ValidationError(FaceMatchError, ValueError):
    """Caller supplied invalid identifiers or an invalid embedding."""


class DuplicateSampleError(FaceMatchError):
    """A sample with the same (user_id, sample_id) already exists."""

    def __init__(self, user_id: str, sample_id: str) -> None:
        super().__init__(f"A face sample for user '{user_id}' with sample id '{sample_id}' already exists")
        self.user_id = user_id
        self.sample_id = sample_id


class RegistrationFaceCountError(FaceMatchError):
    """Registration requires exactly one face in the image."""


class NoFaceDetectedError(RegistrationFaceCountError):
    def __init__(self) -> None:
        super().__init__("No face detected")


class MultipleFacesDetectedError(RegistrationFaceCountError):
    def __init__(self, count: int) -> None:
        super().__init__(f"Multiple faces detected ({count})")
        self.count = count


# -- Model shape mismatches (fatal, the model is misconfigured) ---------------


class ModelShapeError(FaceMatchError):
    """The inference engine declares tensors this pipeline cannot handle."""


class UnsupportedTensorKindError(ModelShapeError):
    def __init__(self, kind: object) -> None:
        super().__init__(f"Unsupported tensor element kind: {kind}")
        self.kind = kind


class UnsupportedInputShapeError(ModelShapeError):
    def __init__(self, shape: tuple[int, ...]) -> None:
        super().__init__(f"Unsupported input shape: {list(shape)}")
        self.shape = shape


class UnsupportedOutputRankError(ModelShapeError):
    def __init__(self, shape: tuple[int, ...]) -> None:
        super().__init__(f"Unsupported output shape: {list(shape)} (rank {len(shape)})")
        self.shape = shape


class NotAnEmbeddingOutputError(ModelShapeError):
    def __init__(self, shape: tuple[int, ...]) -> None:
        super().__init__(f"Model output shape {list(shape)} looks like a detection model, use an embedding model")
        self.shape = shape


# -- Runtime failures ---------------------------------------------------------


class StoreClosedError(FaceMatchError):
    def __init__(self) -> None:
        super().__init__("Embedding store is closed, call ensure_open() first")


class DetectorFailureError(FaceMatchError):
    """The face detector raised while processing an image."""


class InferenceFailureError(FaceMatchError):
    """Preprocessing or the inference engine failed for a face."""
