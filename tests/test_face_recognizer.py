"""Tests for the embedding generator and the ONNX engine adapter."""

from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import FACE, OTHER_FACE, FakeEngine, basis, image_bytes

from facematch.errors import InferenceFailureError, NotAnEmbeddingOutputError, UnsupportedInputShapeError
from facematch.ml.face_recognizer import FaceEmbedder, OnnxInferenceEngine
from facematch.ml.preprocessing import FacePreprocessor
from facematch.ml.tensor_adapter import TensorKind


def _embedder(engine: FakeEngine, fallback: int = 112) -> FaceEmbedder:
    return FaceEmbedder(engine, FacePreprocessor(), fallback_input_size=fallback)


class TestInputSize:
    @pytest.mark.parametrize(
        ("shape", "expected"),
        [
            ((1, 112, 112, 3), 112),
            ((1, 3, 96, 96), 96),
            ((64, 64, 3), 64),
        ],
    )
    def test_from_input_shape(self, shape: tuple[int, ...], expected: int) -> None:
        assert _embedder(FakeEngine(input_shape=shape)).input_size == expected

    def test_flat_input_uses_fallback(self) -> None:
        assert _embedder(FakeEngine(input_shape=(768,)), fallback=16).input_size == 16


class TestLooksLikeEmbeddingModel:
    @pytest.mark.parametrize("shape", [(512,), (1, 512), (1, 128), (64,)])
    def test_accepted(self, shape: tuple[int, ...]) -> None:
        assert _embedder(FakeEngine(output_shape=shape)).looks_like_embedding_model()

    @pytest.mark.parametrize("shape", [(1, 100), (2, 512), (1, 1, 512), (10, 4)])
    def test_rejected(self, shape: tuple[int, ...]) -> None:
        assert not _embedder(FakeEngine(output_shape=shape)).looks_like_embedding_model()


class TestEmbedFaces:
    def test_output_is_normalized(self) -> None:
        engine = FakeEngine([3.0 * basis(0) + 4.0 * basis(1)])
        [embedding] = _embedder(engine).embed_faces(image_bytes(), [FACE])
        assert embedding.shape == (512,)
        assert np.linalg.norm(embedding) == pytest.approx(1.0)
        assert embedding[:2].tolist() == pytest.approx([0.6, 0.8])

    def test_input_tensor_matches_model(self) -> None:
        engine = FakeEngine(input_shape=(1, 3, 112, 112))
        _embedder(engine).embed_faces(image_bytes(), [FACE])
        [tensor] = engine.inputs
        assert tensor.shape == (1, 3, 112, 112)
        assert tensor.dtype == np.float32

    def test_uint8_input(self) -> None:
        engine = FakeEngine(input_kind=TensorKind.UINT8)
        _embedder(engine).embed_faces(image_bytes((200, 10, 90)), [FACE])
        [tensor] = engine.inputs
        assert tensor.dtype == np.uint8
        assert tensor[0, 0, 0].tolist() == [200, 10, 90]

    def test_column_output(self) -> None:
        engine = FakeEngine([basis(5, 128)], output_shape=(128, 1))
        [embedding] = _embedder(engine).embed_faces(image_bytes(), [FACE])
        assert embedding.shape == (128,)
        assert embedding[5] == pytest.approx(1.0)

    def test_faces_in_order(self) -> None:
        engine = FakeEngine([basis(0), basis(1)])
        first, second = _embedder(engine).embed_faces(image_bytes(), [FACE, OTHER_FACE])
        assert first[0] == pytest.approx(1.0)
        assert second[1] == pytest.approx(1.0)

    def test_detection_output_rejected(self) -> None:
        engine = FakeEngine([np.zeros(40)], output_shape=(10, 4))
        with pytest.raises(NotAnEmbeddingOutputError):
            _embedder(engine).embed_faces(image_bytes(), [FACE])

    def test_unsupported_input_shape(self) -> None:
        engine = FakeEngine(input_shape=(1, 112, 112, 4))
        with pytest.raises(UnsupportedInputShapeError):
            _embedder(engine).embed_faces(image_bytes(), [FACE])

    def test_engine_failure_is_wrapped(self) -> None:
        engine = FakeEngine(error=RuntimeError("device lost"))
        with pytest.raises(InferenceFailureError, match="device lost"):
            _embedder(engine).embed_faces(image_bytes(), [FACE])

    def test_undecodable_image(self) -> None:
        with pytest.raises(InferenceFailureError):
            _embedder(FakeEngine()).embed_faces(b"garbage", [FACE])

    def test_close_closes_engine(self) -> None:
        engine = FakeEngine()
        _embedder(engine).close()
        assert engine.closed


class TestOnnxInferenceEngine:
    @staticmethod
    def _session(input_shape: list[object], output_shape: list[object]) -> MagicMock:
        session = MagicMock()
        model_input = MagicMock(shape=input_shape, type="tensor(float)")
        model_input.name = "input.1"
        model_output = MagicMock(shape=output_shape, type="tensor(float)")
        model_output.name = "embedding"
        session.get_inputs.return_value = [model_input]
        session.get_outputs.return_value = [model_output]
        return session

    def test_symbolic_dims_become_one(self) -> None:
        engine = OnnxInferenceEngine(self._session(["batch", 112, 112, 3], [None, 512]))
        assert engine.input_shape() == (1, 112, 112, 3)
        assert engine.output_shape() == (1, 512)
        assert engine.input_kind() is TensorKind.FLOAT32
        assert engine.output_kind() is TensorKind.FLOAT32

    def test_run_feeds_named_input(self) -> None:
        session = self._session([1, 112, 112, 3], [1, 512])
        session.run.return_value = [np.ones((1, 512), dtype=np.float32)]
        engine = OnnxInferenceEngine(session)

        tensor = np.zeros((1, 112, 112, 3), dtype=np.float32)
        result = engine.run(tensor)

        session.run.assert_called_once()
        args = session.run.call_args.args
        assert args[0] is None
        assert args[1]["input.1"] is tensor
        assert result.shape == (1, 512)
