"""Verification engine: registration, verification and identification.

``FaceVerifier`` owns the detector, the embedder, the embedding store and the
isolated execution pool. The host application constructs one explicitly and
passes it to its call sites.

Registration errors (bad identifiers, duplicates, wrong dimensionality, face
count) are raised because they mean the caller did something wrong.
Verification and identification never raise for pipeline failures; they log
and return ``None`` or an empty list.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from facematch.errors import (
    DuplicateSampleError,
    ModelShapeError,
    MultipleFacesDetectedError,
    NoFaceDetectedError,
    ValidationError,
)
from facematch.ml.face_recognizer import FaceEmbedder, OnnxInferenceEngine
from facematch.ml.inference import InferencePool
from facematch.ml.model_manager import OnnxModelManager
from facematch.ml.preprocessing import FacePreprocessor, load_image_bytes
from facematch.ml.similarity import identify_matches, normalize
from facematch.pipeline import (
    detect_faces,
    elapsed_ms,
    embed_faces,
    embed_faces_concurrently,
    load_candidates,
    run_verification,
)
from facematch.storage.store import EmbeddingStore
from facematch.types import (
    ConflictPolicy,
    EmbeddingEntry,
    FaceSample,
    ImageIdentification,
    PhaseTimings,
    RegistrationResult,
    VerificationJob,
    VerificationOutcome,
)
from facematch.worker import VerificationWorker

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import ArrayLike

    from facematch.config import Settings
    from facematch.ml.face_detector import FaceDetector, FaceRegion
    from facematch.ml.model_manager import ModelManager
    from facematch.types import ImageRef

logger = logging.getLogger(__name__)


@dataclass
class _DetectedImage:
    image: ImageRef
    image_bytes: bytes = b""
    faces: list[FaceRegion] = field(default_factory=list)


def _require_id(value: str, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} cannot be empty")
    return value


class FaceVerifier:
    """Face registration and verification against an embedding store."""

    def __init__(
        self,
        settings: Settings,
        detector: FaceDetector,
        embedder: FaceEmbedder,
        store: EmbeddingStore,
        *,
        pool: InferencePool | None = None,
        model_manager: ModelManager | None = None,
    ) -> None:
        self._settings = settings
        self._detector = detector
        self._embedder = embedder
        self._store = store
        self._pool = pool if pool is not None else InferencePool(settings)
        self._model_manager = model_manager
        self._worker = VerificationWorker(detector, embedder, store.database_url)
        self._initialized = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        detector: FaceDetector,
        *,
        model_manager: ModelManager | None = None,
    ) -> FaceVerifier:
        """Build a verifier around the configured ONNX embedding model.

        ``settings.model_path`` takes precedence over the registry name in
        ``settings.face_recognition_model``; ``settings.intra_op_threads`` is
        the inference thread hint.
        """
        manager = model_manager if model_manager is not None else OnnxModelManager(settings)
        model_ref = settings.model_path or settings.face_recognition_model
        engine = OnnxInferenceEngine(manager.get_session(model_ref))
        preprocessor = FacePreprocessor(
            margin=settings.crop_margin,
            mean=settings.pixel_mean,
            std=settings.pixel_std,
        )
        embedder = FaceEmbedder(engine, preprocessor, fallback_input_size=settings.input_size)
        return cls(
            settings,
            detector,
            embedder,
            EmbeddingStore(settings.database_url),
            model_manager=manager,
        )

    # -- Lifecycle ----------------------------------------------------------

    @property
    def pool(self) -> InferencePool:
        return self._pool

    @property
    def store(self) -> EmbeddingStore:
        return self._store

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self) -> None:
        """Open the store and check that the model produces embeddings. Idempotent.

        Raises:
            ModelShapeError: The model output does not look like an embedding.
        """
        if self._initialized:
            return
        if not self._embedder.looks_like_embedding_model():
            output_shape = list(self._embedder.engine.output_shape())
            raise ModelShapeError(f"Loaded model does not look like an embedding model (output {output_shape})")
        await self._store.open()
        self._initialized = True
        logger.info(
            "FaceVerifier ready (input_size=%d, permits=%d)",
            self._embedder.input_size,
            self._pool.permits,
        )

    async def close(self) -> None:
        self._pool.shutdown()
        self._embedder.close()
        await self._store.close()
        if self._model_manager is not None:
            self._model_manager.shutdown()
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("FaceVerifier not initialized. Call init() first.")

    def _threshold(self, threshold: float | None) -> float:
        return self._settings.match_threshold if threshold is None else threshold

    # -- Registration -------------------------------------------------------

    def _checked_embedding(self, embedding: ArrayLike) -> tuple[float, ...]:
        try:
            values = np.asarray(embedding, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Embedding must be a sequence of numbers: {exc}") from exc
        expected = self._settings.embedding_dim
        if values.ndim != 1 or values.size != expected:
            raise ValidationError(f"Embedding must have {expected} dimensions, got {values.size}")
        if not np.all(np.isfinite(values)):
            raise ValidationError("Embedding values must be finite")
        return tuple(float(v) for v in normalize(values))

    async def register(self, user_id: str, sample_id: str, image: ImageRef, *, replace: bool = False) -> str:
        """Register the single face in ``image`` as ``(user_id, sample_id)``.

        Returns:
            ``user_id`` on success.

        Raises:
            ValidationError: Empty identifiers or an embedding of the wrong size.
            DuplicateSampleError: The pair exists and ``replace`` is False.
            NoFaceDetectedError: The image contains no face.
            MultipleFacesDetectedError: The image contains more than one face.
            DetectorFailureError: The detector failed.
            InferenceFailureError: Embedding generation failed.
        """
        self._ensure_initialized()
        _require_id(user_id, "user_id")
        _require_id(sample_id, "sample_id")

        await self._store.ensure_open()
        if not replace and await self._store.get(user_id, sample_id) is not None:
            raise DuplicateSampleError(user_id, sample_id)

        image_bytes = await asyncio.to_thread(load_image_bytes, image)
        faces = await detect_faces(self._detector, image_bytes)
        if not faces:
            raise NoFaceDetectedError
        if len(faces) > 1:
            raise MultipleFacesDetectedError(len(faces))

        embedding = (await embed_faces(self._embedder, image_bytes, faces))[0]
        sample = FaceSample(user_id=user_id, sample_id=sample_id, embedding=self._checked_embedding(embedding))
        await self._store.insert(sample, ConflictPolicy.REPLACE if replace else ConflictPolicy.ABORT)
        logger.info("Registered sample %s for user %s", sample_id, user_id)
        return user_id

    async def register_from_embedding(
        self,
        user_id: str,
        sample_id: str,
        embedding: ArrayLike,
        *,
        replace: bool = False,
    ) -> RegistrationResult:
        """Register a pre-computed embedding. It is L2-normalized before storage.

        Raises:
            ValidationError: Empty identifiers, wrong dimensionality or non-finite values.
            DuplicateSampleError: The pair exists and ``replace`` is False.
        """
        self._ensure_initialized()
        _require_id(user_id, "user_id")
        _require_id(sample_id, "sample_id")
        sample = FaceSample(user_id=user_id, sample_id=sample_id, embedding=self._checked_embedding(embedding))

        await self._store.ensure_open()
        await self._store.insert(sample, ConflictPolicy.REPLACE if replace else ConflictPolicy.ABORT)
        logger.info("Registered embedding sample %s for user %s", sample_id, user_id)
        return RegistrationResult(user_id=user_id, sample_id=sample_id, success=True)

    async def register_from_embeddings_batch(self, entries: Iterable[EmbeddingEntry]) -> list[RegistrationResult]:
        """Register several embeddings; a bad entry is reported, not raised."""
        results: list[RegistrationResult] = []
        for entry in entries:
            try:
                result = await self.register_from_embedding(
                    entry.user_id,
                    entry.sample_id,
                    entry.embedding,
                    replace=entry.replace,
                )
            except (ValidationError, DuplicateSampleError) as exc:
                logger.warning("Skipping embedding %s/%s: %s", entry.user_id, entry.sample_id, exc)
                result = RegistrationResult(
                    user_id=entry.user_id,
                    sample_id=entry.sample_id,
                    success=False,
                    error=str(exc),
                )
            results.append(result)
        succeeded = sum(1 for r in results if r.success)
        logger.info("Batch registration: %d of %d embeddings stored", succeeded, len(results))
        return results

    # -- Verification -------------------------------------------------------

    def make_job(self, image: ImageRef, threshold: float | None, target_user_id: str | None) -> VerificationJob:
        target = target_user_id if target_user_id and target_user_id.strip() else None
        return VerificationJob(image=image, threshold=self._threshold(threshold), target_user_id=target)

    async def verify_detailed(
        self,
        image: ImageRef,
        threshold: float | None = None,
        target_user_id: str | None = None,
    ) -> VerificationOutcome:
        """Like ``verify`` but returns the full outcome with timings."""
        self._ensure_initialized()
        job = self.make_job(image, threshold, target_user_id)
        await self._store.ensure_open()
        return await run_verification(job, detector=self._detector, embedder=self._embedder, store=self._store)

    async def verify(
        self,
        image: ImageRef,
        threshold: float | None = None,
        target_user_id: str | None = None,
    ) -> str | None:
        """Return the best-matching user id at or above ``threshold``, else None.

        With ``target_user_id`` only that user's samples are compared.
        """
        outcome = await self.verify_detailed(image, threshold, target_user_id)
        return outcome.match_user_id

    async def run_isolated(self, job: VerificationJob) -> VerificationOutcome:
        """Run one verification in the isolated execution context.

        At most ``max_concurrent_verifications`` jobs run at once; other
        callers wait for a permit. An in-memory store cannot be reopened from
        the worker, so its candidates are loaded here and travel with the job.
        """
        self._ensure_initialized()
        started = time.perf_counter()
        if self._store.is_in_memory and job.candidates is None:
            try:
                await self._store.ensure_open()
                candidates = await load_candidates(self._store, job.target_user_id)
            except Exception as exc:
                logger.exception("Could not load registered faces for isolated verification")
                return VerificationOutcome(
                    success=False,
                    timings=PhaseTimings(total_ms=elapsed_ms(started)),
                    error=str(exc),
                )
            job = dataclasses.replace(job, candidates=tuple(candidates))
        try:
            outcome = await self._pool.run(self._worker, job)
        except TimeoutError:
            logger.error(
                "No isolated verification slot freed up within %ss",
                self._settings.isolated_acquire_timeout,
            )
            return VerificationOutcome(
                success=False,
                timings=PhaseTimings(total_ms=elapsed_ms(started)),
                error="Timed out waiting for a verification slot",
            )
        if not outcome.success:
            logger.error("Isolated verification failed: %s (%s)", outcome.error, outcome.timings.summary())
        return outcome

    async def verify_isolated(
        self,
        image: ImageRef,
        threshold: float | None = None,
        target_user_id: str | None = None,
    ) -> str | None:
        """``verify`` executed in the isolated execution context."""
        outcome = await self.run_isolated(self.make_job(image, threshold, target_user_id))
        return outcome.match_user_id

    async def verify_batch(
        self,
        images: Sequence[ImageRef],
        threshold: float | None = None,
        target_user_id: str | None = None,
    ) -> list[str | None]:
        """Isolated verification of several images, results in input order.

        All calls are issued at once; the pool semaphore lets up to its permit
        count run in parallel.
        """
        results = await asyncio.gather(*(self.verify_isolated(image, threshold, target_user_id) for image in images))
        return list(results)

    # -- Identification -----------------------------------------------------

    async def identify_all(self, image: ImageRef, threshold: float | None = None) -> list[str]:
        """Every distinct registered user found among the faces in ``image``."""
        self._ensure_initialized()
        limit = self._threshold(threshold)
        started = time.perf_counter()
        try:
            await self._store.ensure_open()
            candidates = await self._store.list_all()
            if not candidates:
                return []
            image_bytes = await asyncio.to_thread(load_image_bytes, image)
            faces = await detect_faces(self._detector, image_bytes)
            if not faces:
                return []
            embeddings = await embed_faces(self._embedder, image_bytes, faces)
            user_ids = identify_matches(candidates, embeddings, limit)
        except Exception:
            logger.exception("Identification failed after %dms", elapsed_ms(started))
            return []
        logger.info("Identified %d users among %d faces in %dms", len(user_ids), len(faces), elapsed_ms(started))
        return user_ids

    async def _load_and_detect(self, image: ImageRef) -> _DetectedImage:
        try:
            image_bytes = await asyncio.to_thread(load_image_bytes, image)
            faces = await detect_faces(self._detector, image_bytes)
        except Exception as exc:
            logger.error("Detection failed for %r: %s", _describe(image), exc)
            return _DetectedImage(image=image)
        return _DetectedImage(image=image, image_bytes=image_bytes, faces=faces)

    async def _identify_detected(
        self,
        item: _DetectedImage,
        candidates: Sequence[FaceSample],
        threshold: float,
    ) -> ImageIdentification:
        if not item.faces:
            return ImageIdentification(image=item.image)
        try:
            embeddings = await embed_faces_concurrently(self._embedder, item.image_bytes, item.faces)
        except Exception as exc:
            logger.error("Embedding failed for %r: %s", _describe(item.image), exc)
            return ImageIdentification(image=item.image)
        user_ids = identify_matches(candidates, embeddings, threshold)
        return ImageIdentification(image=item.image, user_ids=tuple(user_ids))

    async def identify_multi_image(
        self,
        images: Sequence[ImageRef],
        threshold: float | None = None,
        batch_size: int | None = None,
    ) -> list[ImageIdentification]:
        """Identify users across many images, one result per image in input order.

        Phase 1 detects faces in batches of ``batch_size`` images, the images
        of a batch in parallel and batches one after another. Phase 2 embeds
        the faces of each image in parallel and matches them.
        """
        self._ensure_initialized()
        size = self._settings.identify_batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValidationError("batch_size must be at least 1")
        limit = self._threshold(threshold)
        images = list(images)
        if not images:
            return []

        try:
            await self._store.ensure_open()
            candidates = await self._store.list_all()
        except Exception:
            logger.exception("Could not load registered faces")
            return [ImageIdentification(image=image) for image in images]
        if not candidates:
            return [ImageIdentification(image=image) for image in images]

        started = time.perf_counter()
        detected: list[_DetectedImage] = []
        for offset in range(0, len(images), size):
            batch = images[offset : offset + size]
            detected.extend(await asyncio.gather(*(self._load_and_detect(image) for image in batch)))
        detection_ms = elapsed_ms(started)

        phase = time.perf_counter()
        results = [await self._identify_detected(item, candidates, limit) for item in detected]
        logger.info(
            "Identified %d images (batch_size=%d): detection %dms, matching %dms",
            len(images),
            size,
            detection_ms,
            elapsed_ms(phase),
        )
        return results

    # -- Store management ---------------------------------------------------

    async def is_registered(self, user_id: str, sample_id: str | None = None) -> bool:
        """Whether ``user_id`` (or the exact ``(user_id, sample_id)`` pair) is registered."""
        self._ensure_initialized()
        if not user_id or not user_id.strip():
            return False
        await self._store.ensure_open()
        if sample_id is None:
            return await self._store.count_by_user(user_id) > 0
        if not sample_id.strip():
            return False
        return await self._store.get(user_id, sample_id) is not None

    async def count_for_user(self, user_id: str) -> int:
        self._ensure_initialized()
        await self._store.ensure_open()
        return await self._store.count_by_user(user_id)

    async def list_users(self) -> list[str]:
        self._ensure_initialized()
        await self._store.ensure_open()
        return await self._store.list_user_ids()

    async def list_samples(self, user_id: str) -> list[FaceSample]:
        self._ensure_initialized()
        await self._store.ensure_open()
        return await self._store.list_by_user(user_id)

    async def delete_sample(self, user_id: str, sample_id: str) -> bool:
        self._ensure_initialized()
        await self._store.ensure_open()
        deleted = await self._store.delete_sample(user_id, sample_id)
        if deleted:
            logger.info("Deleted sample %s of user %s", sample_id, user_id)
        return deleted

    async def delete_user(self, user_id: str) -> int:
        self._ensure_initialized()
        await self._store.ensure_open()
        count = await self._store.delete_user(user_id)
        logger.info("Deleted %d samples of user %s", count, user_id)
        return count


def _describe(image: ImageRef) -> str:
    if isinstance(image, bytes | bytearray):
        return f"<{len(image)} bytes>"
    return str(image)
