"""Shared fixtures: fake detector and inference engine, temporary stores."""

from __future__ import annotations

import io
import itertools
import threading
import time
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from facematch.config import Settings
from facematch.ml.face_detector import FaceRegion
from facematch.ml.face_recognizer import FaceEmbedder
from facematch.ml.preprocessing import FacePreprocessor
from facematch.ml.tensor_adapter import TensorKind
from facematch.storage.store import EmbeddingStore
from facematch.verification import FaceVerifier

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence
    from pathlib import Path

    from numpy.typing import NDArray

DIM = 512


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def basis(index: int, dim: int = DIM) -> NDArray[np.float64]:
    vector = np.zeros(dim)
    vector[index] = 1.0
    return vector


def with_similarity(score: float, axis: int, dim: int = DIM) -> NDArray[np.float64]:
    """Unit vector whose cosine similarity with ``basis(0)`` is ``score``."""
    return score * basis(0, dim) + np.sqrt(1.0 - score**2) * basis(axis, dim)


def image_bytes(color: tuple[int, int, int] = (120, 90, 60), size: int = 160) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), color).save(buffer, format="PNG")
    return buffer.getvalue()


FACE = FaceRegion(left=40, top=40, width=60, height=60)
OTHER_FACE = FaceRegion(left=100, top=20, width=40, height=50)


class _ConcurrencyTracker:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def enter(self) -> None:
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def leave(self) -> None:
        with self._lock:
            self.active -= 1


class FakeDetector(_ConcurrencyTracker):
    """Returns configured faces, optionally per image, and records concurrency."""

    def __init__(
        self,
        faces: Sequence[FaceRegion] = (FACE,),
        *,
        delay: float = 0.0,
        per_image: dict[bytes, Sequence[FaceRegion]] | None = None,
        failing: set[bytes] | None = None,
    ) -> None:
        super().__init__(delay)
        self.faces = list(faces)
        self.per_image = per_image or {}
        self.failing = failing or set()

    def detect(self, image_bytes: bytes) -> list[FaceRegion]:
        self.enter()
        try:
            if self.delay:
                time.sleep(self.delay)
            if image_bytes in self.failing:
                raise RuntimeError("detector crashed")
            return list(self.per_image.get(image_bytes, self.faces))
        finally:
            self.leave()


class FakeEngine(_ConcurrencyTracker):
    """Inference engine returning the configured outputs in rotation."""

    def __init__(
        self,
        outputs: Sequence[NDArray[np.float64]] | None = None,
        *,
        input_shape: tuple[int, ...] = (1, 112, 112, 3),
        output_shape: tuple[int, ...] = (1, DIM),
        input_kind: TensorKind = TensorKind.FLOAT32,
        output_kind: TensorKind = TensorKind.FLOAT32,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        super().__init__(delay)
        self._outputs = itertools.cycle(list(outputs) if outputs else [basis(0)])
        self._input_shape = input_shape
        self._output_shape = output_shape
        self._input_kind = input_kind
        self._output_kind = output_kind
        self.error = error
        self.inputs: list[NDArray[np.generic]] = []
        self.closed = False

    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    def output_shape(self) -> tuple[int, ...]:
        return self._output_shape

    def input_kind(self) -> TensorKind:
        return self._input_kind

    def output_kind(self) -> TensorKind:
        return self._output_kind

    def run(self, input_tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        self.enter()
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            with self._lock:
                self.inputs.append(input_tensor)
                output = next(self._outputs)
            return np.asarray(output, dtype=np.float32).reshape(self._output_shape)
        finally:
            self.leave()

    def close(self) -> None:
        self.closed = True


def make_verifier(settings: Settings, detector: FakeDetector, engine: FakeEngine) -> FaceVerifier:
    embedder = FaceEmbedder(engine, FacePreprocessor(), fallback_input_size=settings.input_size)
    return FaceVerifier(settings, detector, embedder, EmbeddingStore(settings.database_url))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'faces.db'}",
        models_dir=str(tmp_path / "models"),
    )


@pytest.fixture()
def detector() -> FakeDetector:
    return FakeDetector()


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
async def store(settings: Settings) -> AsyncIterator[EmbeddingStore]:
    embedding_store = EmbeddingStore(settings.database_url)
    await embedding_store.open()
    yield embedding_store
    await embedding_store.close()


@pytest.fixture()
async def verifier(settings: Settings, detector: FakeDetector, engine: FakeEngine) -> AsyncIterator[FaceVerifier]:
    face_verifier = make_verifier(settings, detector, engine)
    await face_verifier.init()
    yield face_verifier
    await face_verifier.close()
