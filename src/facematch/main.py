"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facematch.api.middleware import install_error_handlers
from facematch.api.routes import router
from facematch.config import get_settings
from facematch.ml.face_detector import load_detector
from facematch.verification import FaceVerifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FaceMatch (device=%s, model=%s, max_concurrent_verifications=%s, database=%s)",
        settings.device,
        settings.model_path or settings.face_recognition_model,
        settings.max_concurrent_verifications,
        settings.database_url,
    )

    if settings.detector is None:
        raise RuntimeError("FACEMATCH_DETECTOR must name a face detector, e.g. 'mypackage.detectors:RetinaFace'")

    verifier = FaceVerifier.from_settings(settings, load_detector(settings.detector))
    await verifier.init()
    app.state.verifier = verifier

    logger.info("FaceMatch ready")
    yield

    logger.info("Shutting down FaceMatch")
    await verifier.close()
    logger.info("FaceMatch shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FaceMatch",
        description="Face registration, verification and identification against stored embeddings",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
