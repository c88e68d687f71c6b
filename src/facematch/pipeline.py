"""Verification pipeline steps shared by the direct and isolated paths.

detect -> embed -> compare. Detector and inference calls are offloaded to
worker threads so the event loop running the pipeline never blocks on them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from facematch.errors import DetectorFailureError
from facematch.ml.preprocessing import load_image_bytes
from facematch.ml.similarity import best_match
from facematch.types import PhaseTimings, VerificationOutcome

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from facematch.ml.face_detector import FaceDetector, FaceRegion
    from facematch.ml.face_recognizer import FaceEmbedder
    from facematch.storage.store import EmbeddingStore
    from facematch.types import FaceSample, VerificationJob

logger = logging.getLogger(__name__)


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


async def detect_faces(detector: FaceDetector, image_bytes: bytes) -> list[FaceRegion]:
    """Run the detector off the event loop.

    Raises:
        DetectorFailureError: The detector raised.
    """
    try:
        return list(await asyncio.to_thread(detector.detect, image_bytes))
    except Exception as exc:
        raise DetectorFailureError(f"Face detection failed: {exc}") from exc


async def embed_faces(
    embedder: FaceEmbedder,
    image_bytes: bytes,
    faces: Sequence[FaceRegion],
) -> list[NDArray[np.float64]]:
    """Embed every face of one image, one after another."""
    return await asyncio.to_thread(embedder.embed_faces, image_bytes, faces)


async def embed_faces_concurrently(
    embedder: FaceEmbedder,
    image_bytes: bytes,
    faces: Sequence[FaceRegion],
) -> list[NDArray[np.float64]]:
    """Embed the faces of one image in parallel.

    A face that fails to embed is logged and left out of the result.
    """
    image = await asyncio.to_thread(embedder.preprocessor.decode_image, image_bytes)
    results = await asyncio.gather(
        *(asyncio.to_thread(embedder.embed_face, image, face) for face in faces),
        return_exceptions=True,
    )
    embeddings: list[NDArray[np.float64]] = []
    for index, result in enumerate(results):
        if isinstance(result, BaseException):
            logger.error("Embedding failed for face %d of %d: %s", index + 1, len(faces), result)
            continue
        embeddings.append(result)
    return embeddings


async def load_candidates(store: EmbeddingStore, target_user_id: str | None) -> list[FaceSample]:
    if target_user_id:
        return await store.list_by_user(target_user_id)
    return await store.list_all()


async def _job_candidates(job: VerificationJob, store: EmbeddingStore | None) -> list[FaceSample]:
    if job.candidates is not None:
        return list(job.candidates)
    if store is None:
        raise ValueError("Verification job has no candidates and no store to load them from")
    return await load_candidates(store, job.target_user_id)


async def run_verification(
    job: VerificationJob,
    *,
    detector: FaceDetector,
    embedder: FaceEmbedder,
    store: EmbeddingStore | None,
) -> VerificationOutcome:
    """Verify one image against the registered samples.

    Candidates preloaded on ``job`` take precedence over ``store``.

    Never raises: failures come back as ``success=False`` with the error
    message, after being logged with the per-phase timings.
    """
    timings = PhaseTimings()
    started = time.perf_counter()
    faces_detected = 0
    try:
        phase = time.perf_counter()
        candidates = await _job_candidates(job, store)
        timings.store_query_ms = elapsed_ms(phase)
        if not candidates:
            timings.total_ms = elapsed_ms(started)
            return VerificationOutcome(success=True, timings=timings, reason="No registered faces")

        phase = time.perf_counter()
        image_bytes = await asyncio.to_thread(load_image_bytes, job.image)
        timings.load_ms = elapsed_ms(phase)

        phase = time.perf_counter()
        faces = await detect_faces(detector, image_bytes)
        timings.detection_ms = elapsed_ms(phase)
        faces_detected = len(faces)
        if not faces:
            timings.total_ms = elapsed_ms(started)
            return VerificationOutcome(
                success=True,
                records_compared=len(candidates),
                timings=timings,
                reason="No face detected",
            )

        phase = time.perf_counter()
        embeddings = await embed_faces(embedder, image_bytes, faces)
        timings.embedding_ms = elapsed_ms(phase)

        phase = time.perf_counter()
        match = best_match(candidates, embeddings)
        timings.comparison_ms = elapsed_ms(phase)
        timings.total_ms = elapsed_ms(started)
    except Exception as exc:
        timings.total_ms = elapsed_ms(started)
        logger.exception("Verification failed (%s)", timings.summary())
        return VerificationOutcome(
            success=False,
            faces_detected=faces_detected,
            timings=timings,
            error=str(exc),
        )

    logger.info(
        "Best score %.4f for %s across %d records and %d faces (%s)",
        match.score,
        match.user_id,
        len(candidates),
        faces_detected,
        timings.summary(),
    )
    return VerificationOutcome(
        success=True,
        match_user_id=match.user_id if match.accepted(job.threshold) else None,
        best_score=match.score,
        records_compared=len(candidates),
        faces_detected=faces_detected,
        timings=timings,
        reason=None if match.accepted(job.threshold) else "Below threshold",
    )
