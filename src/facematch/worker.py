"""Verification worker for the isolated execution context.

Each job runs on a pool thread inside its own event loop, with its own
embedding store handle that lives exactly as long as the job. Nothing
connection-bound is shared with the caller's loop. Jobs for an in-memory
store arrive with their candidates already loaded and open no handle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from facematch.pipeline import elapsed_ms, run_verification
from facematch.storage.store import EmbeddingStore
from facematch.types import PhaseTimings, VerificationOutcome

if TYPE_CHECKING:
    from facematch.ml.face_detector import FaceDetector
    from facematch.ml.face_recognizer import FaceEmbedder
    from facematch.types import VerificationJob

logger = logging.getLogger(__name__)


class VerificationWorker:
    """Callable submitted to the ``InferencePool`` for one verification."""

    def __init__(self, detector: FaceDetector, embedder: FaceEmbedder, database_url: str) -> None:
        self._detector = detector
        self._embedder = embedder
        self._database_url = database_url

    def __call__(self, job: VerificationJob) -> VerificationOutcome:
        started = time.perf_counter()
        try:
            return asyncio.run(self._run(job))
        except Exception as exc:
            logger.exception("Isolated verification worker failed")
            return VerificationOutcome(
                success=False,
                timings=PhaseTimings(total_ms=elapsed_ms(started)),
                error=str(exc),
            )

    async def _run(self, job: VerificationJob) -> VerificationOutcome:
        if job.candidates is not None:
            return await run_verification(job, detector=self._detector, embedder=self._embedder, store=None)
        store = EmbeddingStore(self._database_url)
        await store.open()
        try:
            return await run_verification(job, detector=self._detector, embedder=self._embedder, store=store)
        finally:
            await store.close()
