"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facestylizer.api.routes import router
from facestylizer.config import get_settings
from facestylizer.ml.inference import InferencePool
from facestylizer.ml.landmarker import LandmarkerOptions
from facestylizer.ml.model_manager import OnnxModelManager
from facestylizer.ml.stylizer import FaceStylizerOptions, create_face_stylizer
from facestylizer.ml.stylizer_graph import Acceleration, PipelineOptions

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the stylizer on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FaceStylizer (device=%s, max_concurrent=%s, bundle=%s, face_crop=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_bundle,
        settings.output_face_crop,
    )

    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager
    options = FaceStylizerOptions(
        pipeline=PipelineOptions(
            acceleration=Acceleration(settings.device),
            face_landmarker=LandmarkerOptions(
                min_face_detection_confidence=settings.min_face_detection_confidence,
                min_face_presence_confidence=settings.min_face_presence_confidence,
            ),
            output_face_crop=settings.output_face_crop,
        )
    )
    stylizer = create_face_stylizer(options, model_manager, settings.model_bundle)
    app.state.stylizer = stylizer

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("FaceStylizer ready")
    yield

    logger.info("Shutting down FaceStylizer")
    inference_pool.shutdown()
    stylizer.close()
    model_manager.shutdown()
    logger.info("FaceStylizer shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FaceStylizer",
        description="Single-face stylization service re-registered into the input frame",
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

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("facestylizer.main:app", host=settings.host, port=settings.port)
