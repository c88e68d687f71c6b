"""Face embedding: preprocessing, tensor adaptation, inference, normalization.

``InferenceEngine`` is the contract the pipeline needs from a neural network
runtime; ``OnnxInferenceEngine`` implements it on top of ONNX Runtime.
``FaceEmbedder`` turns a detected face into an L2-normalized embedding.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import numpy as np

from facematch.errors import InferenceFailureError, ModelShapeError
from facematch.ml.similarity import normalize
from facematch.ml.tensor_adapter import (
    TensorKind,
    flatten_output,
    make_output_buffer,
    shape_input,
    spatial_size,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession
    from PIL import Image

    from facematch.ml.face_detector import FaceRegion
    from facematch.ml.preprocessing import FacePreprocessor

logger = logging.getLogger(__name__)

EMBEDDING_SIZES: tuple[int, ...] = (512, 256, 192, 128, 64)


class InferenceEngine(Protocol):
    """A loaded network with introspectable input and output tensors."""

    def input_shape(self) -> tuple[int, ...]: ...

    def output_shape(self) -> tuple[int, ...]: ...

    def input_kind(self) -> TensorKind: ...

    def output_kind(self) -> TensorKind: ...

    def run(self, input_tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        """Execute the network on a tensor shaped as ``input_shape()``."""
        ...

    def close(self) -> None: ...


def _static_shape(dims: Sequence[object]) -> tuple[int, ...]:
    # Symbolic or unknown dimensions (usually the batch axis) run with size 1.
    return tuple(d if isinstance(d, int) and d > 0 else 1 for d in dims)


class OnnxInferenceEngine:
    """``InferenceEngine`` backed by an ONNX Runtime session."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        model_input = session.get_inputs()[0]
        model_output = session.get_outputs()[0]
        self._input_name: str = model_input.name
        self._input_shape = _static_shape(model_input.shape)
        self._output_shape = _static_shape(model_output.shape)
        self._input_kind = TensorKind.parse(model_input.type)
        self._output_kind = TensorKind.parse(model_output.type)
        logger.info(
            "Embedding model input %s %s, output %s %s",
            list(self._input_shape),
            self._input_kind,
            list(self._output_shape),
            self._output_kind,
        )

    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    def output_shape(self) -> tuple[int, ...]:
        return self._output_shape

    def input_kind(self) -> TensorKind:
        return self._input_kind

    def output_kind(self) -> TensorKind:
        return self._output_kind

    def run(self, input_tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        outputs = self._session.run(None, {self._input_name: input_tensor})
        result: NDArray[np.generic] = np.asarray(outputs[0])
        return result

    def close(self) -> None:
        # Sessions are owned and cached by the model manager.
        return None


class FaceEmbedder:
    """Generates L2-normalized embeddings for detected faces."""

    def __init__(
        self,
        engine: InferenceEngine,
        preprocessor: FacePreprocessor,
        *,
        fallback_input_size: int = 112,
    ) -> None:
        self._engine = engine
        self._preprocessor = preprocessor
        self._fallback_input_size = fallback_input_size

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def preprocessor(self) -> FacePreprocessor:
        return self._preprocessor

    @property
    def input_size(self) -> int:
        """Square input side the model expects."""
        size = spatial_size(self._engine.input_shape())
        return size if size is not None else self._fallback_input_size

    def looks_like_embedding_model(self, allowed_sizes: Sequence[int] = EMBEDDING_SIZES) -> bool:
        """Accept ``[E]`` or ``[1, E]`` outputs with ``E`` in ``allowed_sizes``."""
        shape = self._engine.output_shape()
        if len(shape) == 1:
            return shape[0] in allowed_sizes
        if len(shape) == 2 and shape[0] == 1:
            return shape[1] in allowed_sizes
        return False

    def embed_preprocessed(self, flat_data: NDArray[np.float32]) -> NDArray[np.float64]:
        """Run the model on a preprocessed buffer and return a normalized embedding."""
        engine = self._engine
        shaped = shape_input(
            flat_data,
            engine.input_shape(),
            engine.input_kind(),
            mean=self._preprocessor.mean,
            std=self._preprocessor.std,
        )
        output_shape = engine.output_shape()
        output = make_output_buffer(output_shape, engine.output_kind())
        output[...] = np.reshape(engine.run(shaped), output.shape)
        return normalize(flatten_output(output, output_shape))

    def embed_face(self, image: Image.Image, face: FaceRegion) -> NDArray[np.float64]:
        """Embed one face of a decoded image.

        Raises:
            ModelShapeError: The model declares tensors the adapter cannot handle.
            InferenceFailureError: Preprocessing or inference failed.
        """
        try:
            flat = self._preprocessor.preprocess(image, face, self.input_size)
            return self.embed_preprocessed(flat)
        except ModelShapeError:
            raise
        except Exception as exc:
            raise InferenceFailureError(f"Embedding generation failed: {exc}") from exc

    def embed_faces(self, image_bytes: bytes, faces: Sequence[FaceRegion]) -> list[NDArray[np.float64]]:
        """Decode ``image_bytes`` once and embed every face in order."""
        try:
            image = self._preprocessor.decode_image(image_bytes)
        except ValueError as exc:
            raise InferenceFailureError(str(exc)) from exc
        return [self.embed_face(image, face) for face in faces]

    def close(self) -> None:
        self._engine.close()
