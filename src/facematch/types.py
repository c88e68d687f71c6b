"""Core value types shared by the store, the pipeline and the API."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TypeAlias

ImageRef: TypeAlias = str | os.PathLike[str] | bytes
"""A path to an encoded image, or the encoded bytes themselves."""


def utc_now() -> datetime:
    return datetime.now(UTC)


class ConflictPolicy(StrEnum):
    """What an insert does when the (user_id, sample_id) pair already exists."""

    ABORT = "abort"
    REPLACE = "replace"


@dataclass(frozen=True)
class FaceSample:
    """One registered face embedding.

    ``(user_id, sample_id)`` is the primary key. The embedding is stored
    L2-normalized and handed out as an immutable tuple.
    """

    user_id: str
    sample_id: str
    embedding: tuple[float, ...]
    created_at: datetime = field(default_factory=utc_now)

    @property
    def dimension(self) -> int:
        return len(self.embedding)


@dataclass(frozen=True)
class EmbeddingEntry:
    """A pre-computed embedding to register."""

    user_id: str
    sample_id: str
    embedding: tuple[float, ...]
    replace: bool = False


@dataclass(frozen=True)
class RegistrationResult:
    user_id: str
    sample_id: str
    success: bool
    error: str | None = None


@dataclass(frozen=True)
class VerificationJob:
    """One in-flight verification request.

    ``candidates`` carries the samples to compare against when the worker
    cannot open its own handle on the store (an in-memory database).
    """

    image: ImageRef
    threshold: float
    target_user_id: str | None = None
    candidates: tuple[FaceSample, ...] | None = None


@dataclass
class PhaseTimings:
    """Milliseconds spent in each verification phase."""

    load_ms: int = 0
    detection_ms: int = 0
    embedding_ms: int = 0
    store_query_ms: int = 0
    comparison_ms: int = 0
    total_ms: int = 0

    def summary(self) -> str:
        return (
            f"load={self.load_ms}ms detect={self.detection_ms}ms embed={self.embedding_ms}ms "
            f"query={self.store_query_ms}ms compare={self.comparison_ms}ms total={self.total_ms}ms"
        )


@dataclass
class VerificationOutcome:
    """Structured result of a verification, including failures."""

    success: bool
    match_user_id: str | None = None
    best_score: float = 0.0
    records_compared: int = 0
    faces_detected: int = 0
    timings: PhaseTimings = field(default_factory=PhaseTimings)
    error: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class ImageIdentification:
    """Users identified in one image of a multi-image request."""

    image: ImageRef
    user_ids: tuple[str, ...] = ()
