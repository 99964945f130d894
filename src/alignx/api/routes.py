"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from pydantic import ValidationError

from alignx.alignment.batch import BatchNormalizer
from alignx.alignment.report import generate_quality_report
from alignx.alignment.templates import TEMPLATE_REGISTRY
from alignx.api.middleware import limit_request_size, verify_api_key
from alignx.api.schemas import (
    BatchResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    NormalizedImage,
    QualityReportOut,
    TemplateInfo,
    TemplatesResponse,
)
from alignx.ml.model_manager import MODEL_REGISTRY
from alignx.ml.preprocessing import ImageRecord

if TYPE_CHECKING:
    from alignx.alignment.landmarks import LandmarkExtractor
    from alignx.api.pool import NormalizationPool
    from alignx.config import Settings
    from alignx.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_BUSY = {status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}}
_INPUT_ERRORS = {
    status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_pool(request: Request) -> NormalizationPool:
    pool: NormalizationPool = request.app.state.pool
    return pool


def _get_extractor(request: Request) -> LandmarkExtractor:
    extractor: LandmarkExtractor = request.app.state.extractor
    return extractor


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _build_normalizer(
    request: Request,
    template: str | None,
    strict_mode: bool | None,
    background_color: str | None,
) -> BatchNormalizer:
    settings = _get_settings(request)
    try:
        config = settings.normalization_config(
            template=template,
            strict_mode=strict_mode,
            background_color=background_color,
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="; ".join(str(err["msg"]) for err in exc.errors()),
        ) from None
    return BatchNormalizer(_get_extractor(request), config)


async def _read_upload(file: UploadFile, max_size: int) -> ImageRecord:
    data = await file.read()
    if len(data) > max_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File '{file.filename}' exceeds {max_size} bytes",
        )
    return ImageRecord(
        data=data,
        mime_type=file.content_type or "application/octet-stream",
        name=file.filename or "",
    )


TemplateParam = Annotated[str | None, Query(description="Template key, e.g. 'professional'")]
StrictParam = Annotated[bool | None, Query(description="Reject images that violate template tolerances")]
BackgroundParam = Annotated[str | None, Query(description="Canvas fill color as #RRGGBB")]


@router.post(
    "/normalize",
    response_model=NormalizedImage,
    responses={**_BUSY, **_INPUT_ERRORS},
    dependencies=[Depends(limit_request_size)],
    summary="Normalize a single headshot",
)
async def normalize_image(
    request: Request,
    file: UploadFile,
    template: TemplateParam = None,
    strict_mode: StrictParam = None,
    background_color: BackgroundParam = None,
) -> NormalizedImage:
    """Align one image to the template using its own scale."""
    normalizer = _build_normalizer(request, template, strict_mode, background_color)
    record = await _read_upload(file, _get_settings(request).max_file_size)
    try:
        result = await _get_pool(request).normalize_one(normalizer, record)
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Server busy") from None
    return NormalizedImage.from_result(result)


@router.post(
    "/normalize-batch",
    response_model=BatchResponse,
    responses={**_BUSY, **_INPUT_ERRORS},
    dependencies=[Depends(limit_request_size)],
    summary="Normalize a batch of headshots to a shared reference",
)
async def normalize_batch(
    request: Request,
    files: Annotated[list[UploadFile], File(description="Images, processed in order")],
    template: TemplateParam = None,
    strict_mode: StrictParam = None,
    background_color: BackgroundParam = None,
) -> BatchResponse:
    """Align every image with one batch-wide scale and eye height."""
    settings = _get_settings(request)
    if len(files) > settings.max_batch_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Batch of {len(files)} images exceeds limit of {settings.max_batch_size}",
        )
    logger.info("Batch request with %d files", len(files))
    normalizer = _build_normalizer(request, template, strict_mode, background_color)
    records = [await _read_upload(f, settings.max_file_size) for f in files]
    try:
        results = await _get_pool(request).normalize_batch(normalizer, records)
    except TimeoutError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Server busy") from None

    return BatchResponse(
        results=[NormalizedImage.from_result(r) for r in results],
        report=QualityReportOut.from_report(generate_quality_report(results)),
    )


@router.get(
    "/templates",
    response_model=TemplatesResponse,
    summary="List output templates",
)
async def list_templates() -> TemplatesResponse:
    """Return the registered templates."""
    return TemplatesResponse(
        templates=[TemplateInfo.from_template(key, tpl) for key, tpl in TEMPLATE_REGISTRY.items()],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return detection models and whether each is the active one."""
    settings = _get_settings(request)
    loaded = set(_get_model_manager(request).get_loaded_models())
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=str(spec.task),
                backbone=spec.backbone,
                status="active" if spec.name == settings.face_detection_model else "available",
                loaded=spec.name in loaded,
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
