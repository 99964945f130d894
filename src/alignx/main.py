"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from alignx.alignment.landmarks import LandmarkExtractor
from alignx.api.pool import NormalizationPool
from alignx.api.routes import router
from alignx.config import Settings, get_settings
from alignx.ml.face_detector import RetinaFaceDetector
from alignx.ml.model_manager import OnnxModelManager, get_model_spec

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the shared detector, extractor and pool for one process.

    The detector is the only process-wide resource; it is created here once
    and injected into every request through the extractor.
    """
    app.state.settings = settings
    model_manager = OnnxModelManager(settings)
    detector = RetinaFaceDetector(
        model_manager,
        settings.face_detection_model,
        input_size=get_model_spec(settings.face_detection_model).input_size,
        score_threshold=settings.detection_score_threshold,
    )
    app.state.model_manager = model_manager
    app.state.extractor = LandmarkExtractor(detector, settings.normalization_config().analysis)
    app.state.pool = NormalizationPool(settings.max_concurrent, settings.queue_timeout)


def shutdown_state(app: FastAPI) -> None:
    app.state.pool.shutdown()
    app.state.extractor.shutdown()
    app.state.model_manager.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting AlignX (device=%s, max_concurrent=%s, detection=%s, template=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
        settings.template,
    )

    init_state(app, settings)

    logger.info("AlignX ready")
    yield

    logger.info("Shutting down AlignX")
    shutdown_state(app)
    logger.info("AlignX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="AlignX",
        description="Headshot alignment to fixed templates with batch-consistent scale",
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
