"""Embedding normalization, cosine similarity and candidate matching."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import ArrayLike, NDArray

    from facematch.types import FaceSample

SIMILARITY_EPSILON = 1e-10


def normalize(vector: ArrayLike) -> NDArray[np.float64]:
    """L2-normalize an embedding. A zero vector is returned unchanged."""
    values = np.asarray(vector, dtype=np.float64)
    norm = math.sqrt(float(np.dot(values, values)))
    if norm == 0.0:
        return values
    return values / norm


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """Cosine similarity of two equal-length vectors.

    Callers filter out mismatched lengths beforehand.
    """
    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    dot = float(np.dot(left, right))
    norms = math.sqrt(float(np.dot(left, left))) * math.sqrt(float(np.dot(right, right)))
    return dot / (norms + SIMILARITY_EPSILON)


@dataclass(frozen=True)
class Match:
    """Best-scoring candidate for one or more query embeddings."""

    user_id: str | None = None
    score: float = -1.0

    def accepted(self, threshold: float) -> bool:
        return self.user_id is not None and self.score >= threshold


def best_match(candidates: Sequence[FaceSample], embeddings: Iterable[NDArray[np.float64]]) -> Match:
    """Highest score across every (candidate, embedding) pair of equal length.

    Ties keep the first pair seen.
    """
    best = Match()
    queries = list(embeddings)
    for sample in candidates:
        stored = np.asarray(sample.embedding, dtype=np.float64)
        for query in queries:
            if stored.shape != query.shape:
                continue
            score = cosine_similarity(stored, query)
            if score > best.score:
                best = Match(user_id=sample.user_id, score=score)
    return best


def identify_matches(
    candidates: Sequence[FaceSample],
    embeddings: Iterable[NDArray[np.float64]],
    threshold: float,
) -> list[str]:
    """Distinct user ids whose per-face best score reaches ``threshold``.

    Each embedding is matched on its own; a user matched by several faces is
    reported once, in first-seen order.
    """
    found: list[str] = []
    for query in embeddings:
        match = best_match(candidates, [query])
        if match.accepted(threshold) and match.user_id not in found:
            found.append(match.user_id)  # type: ignore[arg-type]
    return found
