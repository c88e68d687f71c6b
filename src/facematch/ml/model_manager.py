"""Model manager: resolve, download and load ONNX embedding models.

Models are referenced either by a registry name (downloaded from the
HuggingFace Hub on first use) or by an explicit local ``.onnx`` path.
InsightFace-licensed models are gated behind an explicit opt-in.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from facematch.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def resolve(self, model_ref: str) -> Path:
        """Return a local file path for a registry name or a model path."""
        ...

    def get_session(self, model_ref: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return references of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a downloadable embedding model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    embedding_dim: int
    license: str
    insightface: bool


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "auraface_v1": ModelSpec(
        name="auraface_v1",
        repo_id="fal/AuraFace-v1",
        filename="glintr100.onnx",
        subfolder=None,
        embedding_dim=512,
        license="Apache-2.0",
        insightface=False,
    ),
    "w600k_r50": ModelSpec(
        name="w600k_r50",
        repo_id="public-data/insightface",
        filename="w600k_r50.onnx",
        subfolder="models/buffalo_l",
        embedding_dim=512,
        license="Non-commercial (InsightFace)",
        insightface=True,
    ),
    "w600k_mbf": ModelSpec(
        name="w600k_mbf",
        repo_id="public-data/insightface",
        filename="w600k_mbf.onnx",
        subfolder="models/buffalo_s",
        embedding_dim=512,
        license="Non-commercial (InsightFace)",
        insightface=True,
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads, loads and caches ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = build_providers(settings)
        self._session_options = build_session_options(settings)

    # -- Public API ---------------------------------------------------------

    def resolve(self, model_ref: str) -> Path:
        """Return the local path of a model, downloading registry models if needed.

        Raises:
            KeyError: ``model_ref`` is neither an existing file nor a registry name.
            RuntimeError: The model needs the InsightFace license opt-in.
        """
        local = Path(model_ref)
        if local.suffix == ".onnx" and local.is_file():
            return local

        spec = self._get_spec(model_ref)
        self._check_license(spec)
        self._check_dimension(spec)

        if model_ref in self._model_paths:
            path = self._model_paths[model_ref]
            if path.exists():
                return path

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_ref] = downloaded
        logger.info("Downloaded %s to %s", model_ref, downloaded)
        return downloaded

    def get_session(self, model_ref: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_ref)
            if cached is not None:
                return cached

        model_path = self.resolve(model_ref)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Another thread may have created it while we loaded.
            existing = self._sessions.get(model_ref)
            if existing is not None:
                return existing
            self._sessions[model_ref] = session
            logger.info("Loaded session for %s", model_ref)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return references of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_ref: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_ref]
        except KeyError:
            raise KeyError(f"Unknown model: {model_ref}") from None

    def _check_license(self, spec: ModelSpec) -> None:
        if spec.insightface and not self._settings.accept_insightface_license:
            raise RuntimeError(f"Model '{spec.name}' requires FACEMATCH_ACCEPT_INSIGHTFACE_LICENSE=true")

    def _check_dimension(self, spec: ModelSpec) -> None:
        if spec.embedding_dim != self._settings.embedding_dim:
            logger.warning(
                "Model '%s' produces %d-dim embeddings but FACEMATCH_EMBEDDING_DIM is %d; "
                "registrations will be rejected",
                spec.name,
                spec.embedding_dim,
                self._settings.embedding_dim,
            )


Provider = str | tuple[str, dict[str, object]]


def build_providers(settings: Settings) -> list[Provider]:
    """Execution providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    """Session options; ``intra_op_threads`` is the per-inference thread hint."""
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True
    if settings.device == "openvino":
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
