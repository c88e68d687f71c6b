"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status

from facematch.api.middleware import verify_api_key
from facematch.api.schemas import (
    DeleteResponse,
    EmbeddingBatchRequest,
    EmbeddingBatchResponse,
    EmbeddingRequest,
    ErrorResponse,
    HealthResponse,
    IdentifyMultiResponse,
    IdentifyResponse,
    ImageIdentificationSchema,
    PhaseTimingsSchema,
    RegisterResponse,
    RegistrationResultSchema,
    SampleInfo,
    SamplesResponse,
    UsersResponse,
    VerifyResponse,
)
from facematch.types import EmbeddingEntry

if TYPE_CHECKING:
    from facematch.config import Settings
    from facematch.verification import FaceVerifier

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_REGISTRATION_ERRORS = {
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_verifier(request: Request) -> FaceVerifier:
    verifier: FaceVerifier = request.app.state.verifier
    return verifier


async def _read_upload(request: Request, file: UploadFile) -> bytes:
    data = await file.read()
    limit = _get_settings(request).max_file_size
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File '{file.filename}' exceeds {limit} bytes",
        )
    if not data:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Empty file")
    return data


# -- Registration -------------------------------------------------------------


@router.post(
    "/faces",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_REGISTRATION_ERRORS,
    summary="Register a face from an image",
)
async def register_face(
    request: Request,
    file: UploadFile,
    user_id: Annotated[str, Form()],
    sample_id: Annotated[str, Form()],
    replace: Annotated[bool, Form()] = False,
) -> RegisterResponse:
    """Register the single face in the uploaded image."""
    data = await _read_upload(request, file)
    verifier = _get_verifier(request)
    registered = await verifier.register(user_id, sample_id, data, replace=replace)
    return RegisterResponse(user_id=registered, sample_id=sample_id)


@router.post(
    "/embeddings",
    response_model=RegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_REGISTRATION_ERRORS,
    summary="Register a pre-computed embedding",
)
async def register_embedding(request: Request, body: EmbeddingRequest) -> RegisterResponse:
    verifier = _get_verifier(request)
    result = await verifier.register_from_embedding(body.user_id, body.sample_id, body.embedding, replace=body.replace)
    return RegisterResponse(user_id=result.user_id, sample_id=result.sample_id)


@router.post(
    "/embeddings/batch",
    response_model=EmbeddingBatchResponse,
    summary="Register several pre-computed embeddings",
)
async def register_embeddings_batch(request: Request, body: EmbeddingBatchRequest) -> EmbeddingBatchResponse:
    """Register every entry; failures are reported per entry."""
    verifier = _get_verifier(request)
    entries = [
        EmbeddingEntry(
            user_id=entry.user_id,
            sample_id=entry.sample_id,
            embedding=tuple(entry.embedding),
            replace=entry.replace,
        )
        for entry in body.entries
    ]
    results = await verifier.register_from_embeddings_batch(entries)
    return EmbeddingBatchResponse(
        results=[
            RegistrationResultSchema(user_id=r.user_id, sample_id=r.sample_id, success=r.success, error=r.error)
            for r in results
        ]
    )


# -- Verification -------------------------------------------------------------


@router.post(
    "/verify",
    response_model=VerifyResponse,
    summary="Verify a face against registered users",
)
async def verify_face(
    request: Request,
    file: UploadFile,
    threshold: Annotated[float | None, Form()] = None,
    target_user_id: Annotated[str | None, Form()] = None,
) -> VerifyResponse:
    """Run an isolated verification and return the match with diagnostics."""
    data = await _read_upload(request, file)
    verifier = _get_verifier(request)
    outcome = await verifier.run_isolated(verifier.make_job(data, threshold, target_user_id))
    timings = outcome.timings
    return VerifyResponse(
        user_id=outcome.match_user_id,
        success=outcome.success,
        best_score=outcome.best_score,
        faces_detected=outcome.faces_detected,
        records_compared=outcome.records_compared,
        timings=PhaseTimingsSchema(
            load_ms=timings.load_ms,
            detection_ms=timings.detection_ms,
            embedding_ms=timings.embedding_ms,
            store_query_ms=timings.store_query_ms,
            comparison_ms=timings.comparison_ms,
            total_ms=timings.total_ms,
        ),
        reason=outcome.reason,
        error=outcome.error,
    )


@router.post(
    "/identify",
    response_model=IdentifyResponse,
    summary="Identify every registered user in an image",
)
async def identify(
    request: Request,
    file: UploadFile,
    threshold: Annotated[float | None, Form()] = None,
) -> IdentifyResponse:
    data = await _read_upload(request, file)
    user_ids = await _get_verifier(request).identify_all(data, threshold)
    return IdentifyResponse(user_ids=user_ids)


@router.post(
    "/identify-multi",
    response_model=IdentifyMultiResponse,
    summary="Identify registered users across several images",
)
async def identify_multi(
    request: Request,
    files: list[UploadFile],
    threshold: Annotated[float | None, Form()] = None,
    batch_size: Annotated[int | None, Form(ge=1)] = None,
) -> IdentifyMultiResponse:
    images = [await _read_upload(request, file) for file in files]
    results = await _get_verifier(request).identify_multi_image(images, threshold, batch_size)
    return IdentifyMultiResponse(
        results=[
            ImageIdentificationSchema(index=index, filename=file.filename, user_ids=list(result.user_ids))
            for index, (file, result) in enumerate(zip(files, results, strict=True))
        ]
    )


# -- Store management ---------------------------------------------------------


@router.get("/users", response_model=UsersResponse, summary="List registered users")
async def list_users(request: Request) -> UsersResponse:
    return UsersResponse(users=await _get_verifier(request).list_users())


@router.get(
    "/users/{user_id}/samples",
    response_model=SamplesResponse,
    summary="List the samples of a user, newest first",
)
async def list_samples(request: Request, user_id: str) -> SamplesResponse:
    samples = await _get_verifier(request).list_samples(user_id)
    return SamplesResponse(
        user_id=user_id,
        samples=[
            SampleInfo(user_id=s.user_id, sample_id=s.sample_id, dimension=s.dimension, created_at=s.created_at)
            for s in samples
        ],
    )


@router.delete("/users/{user_id}", response_model=DeleteResponse, summary="Delete every sample of a user")
async def delete_user(request: Request, user_id: str) -> DeleteResponse:
    return DeleteResponse(deleted=await _get_verifier(request).delete_user(user_id))


@router.delete(
    "/users/{user_id}/samples/{sample_id}",
    response_model=DeleteResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Delete one sample",
)
async def delete_sample(request: Request, user_id: str, sample_id: str) -> DeleteResponse:
    if not await _get_verifier(request).delete_sample(user_id, sample_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sample '{sample_id}' for user '{user_id}'",
        )
    return DeleteResponse(deleted=1)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    verifier = _get_verifier(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model=settings.model_path or settings.face_recognition_model,
        registered_users=len(await verifier.list_users()),
        concurrent_verifications=verifier.pool.active_count,
        queue_depth=verifier.pool.queue_depth,
    )
