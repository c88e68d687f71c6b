"""Pydantic request/response schemas for the FaceMatch API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class EmbeddingRequest(BaseModel):
    """A pre-computed embedding to register."""

    user_id: str
    sample_id: str
    embedding: list[float] = Field(description="Embedding vector, normalized server-side")
    replace: bool = False


class EmbeddingBatchRequest(BaseModel):
    entries: list[EmbeddingRequest]


class RegisterResponse(BaseModel):
    user_id: str
    sample_id: str


class RegistrationResultSchema(BaseModel):
    user_id: str
    sample_id: str
    success: bool
    error: str | None = None


class EmbeddingBatchResponse(BaseModel):
    results: list[RegistrationResultSchema]


class PhaseTimingsSchema(BaseModel):
    """Milliseconds spent in each verification phase."""

    load_ms: int
    detection_ms: int
    embedding_ms: int
    store_query_ms: int
    comparison_ms: int
    total_ms: int


class VerifyResponse(BaseModel):
    """Verification result. ``user_id`` is null when nothing matched."""

    user_id: str | None
    success: bool
    best_score: float
    faces_detected: int
    records_compared: int
    timings: PhaseTimingsSchema
    reason: str | None = None
    error: str | None = None


class IdentifyResponse(BaseModel):
    user_ids: list[str]


class ImageIdentificationSchema(BaseModel):
    index: int = Field(description="Position of the image in the request")
    filename: str | None
    user_ids: list[str]


class IdentifyMultiResponse(BaseModel):
    results: list[ImageIdentificationSchema]


class UsersResponse(BaseModel):
    users: list[str]


class SampleInfo(BaseModel):
    """A registered sample, without its embedding."""

    user_id: str
    sample_id: str
    dimension: int
    created_at: datetime


class SamplesResponse(BaseModel):
    user_id: str
    samples: list[SampleInfo]


class DeleteResponse(BaseModel):
    deleted: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model: str
    registered_users: int
    concurrent_verifications: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
