"""Pydantic request/response schemas for the AlignX API."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from alignx.alignment.batch import NormalizationResult
    from alignx.alignment.report import BatchQualityReport
    from alignx.alignment.templates import Template


class MetricsOut(BaseModel):
    """Source-space measurements of one image."""

    eyes_y: float
    shoulders_y: float
    head_size: float
    rotation_angle: float
    shoulder_rotation: float


class ValidationOut(BaseModel):
    valid: bool
    errors: list[str]
    warnings: list[str]


class NormalizedImage(BaseModel):
    """Result for a single uploaded image."""

    name: str
    success: bool
    mime_type: str
    image: str = Field(description="Base64-encoded image bytes (the original when success is false)")
    quality: str | None = Field(default=None, description="excellent, good, acceptable or poor")
    metrics: MetricsOut
    validation: ValidationOut | None
    warnings: list[str]
    shoulder_detection_valid: bool
    processing_time_ms: float

    @classmethod
    def from_result(cls, result: NormalizationResult) -> NormalizedImage:
        output = result.normalized_image
        validation = result.validation
        return cls(
            name=output.name,
            success=result.success,
            mime_type=output.mime_type,
            image=base64.b64encode(output.data).decode("ascii"),
            quality=str(result.analysis.quality) if result.analysis else None,
            metrics=MetricsOut(
                eyes_y=result.metrics.eyes_y,
                shoulders_y=result.metrics.shoulders_y,
                head_size=result.metrics.head_size,
                rotation_angle=result.metrics.rotation_angle,
                shoulder_rotation=result.metrics.shoulder_rotation,
            ),
            validation=ValidationOut(
                valid=validation.valid,
                errors=[str(e) for e in validation.errors],
                warnings=[str(w) for w in validation.warnings],
            )
            if validation
            else None,
            warnings=list(result.warnings),
            shoulder_detection_valid=result.shoulder_detection_valid,
            processing_time_ms=result.processing_time_ms,
        )


class IssueCountOut(BaseModel):
    issue: str
    count: int


class QualityReportOut(BaseModel):
    total_images: int
    successful: int
    failed: int
    with_warnings: int
    average_processing_time_ms: float
    quality_distribution: dict[str, int]
    common_issues: list[IssueCountOut]

    @classmethod
    def from_report(cls, report: BatchQualityReport) -> QualityReportOut:
        return cls(
            total_images=report.total_images,
            successful=report.successful,
            failed=report.failed,
            with_warnings=report.with_warnings,
            average_processing_time_ms=report.average_processing_time_ms,
            quality_distribution={str(k): v for k, v in report.quality_distribution.items()},
            common_issues=[IssueCountOut(issue=i.issue, count=i.count) for i in report.common_issues],
        )


class BatchResponse(BaseModel):
    """Response for batch normalization: one entry per upload, in order."""

    results: list[NormalizedImage]
    report: QualityReportOut


class TemplateInfo(BaseModel):
    key: str
    name: str
    width: int
    height: int
    eyes_y: float = Field(description="Eye anchor as a fraction of height")
    shoulders_y: float = Field(description="Shoulder anchor as a fraction of height")

    @classmethod
    def from_template(cls, key: str, template: Template) -> TemplateInfo:
        return cls(
            key=key,
            name=template.name,
            width=template.width,
            height=template.height,
            eyes_y=template.anchor_points.eyes_y,
            shoulders_y=template.anchor_points.shoulders_y,
        )


class TemplatesResponse(BaseModel):
    templates: list[TemplateInfo]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'landmark_detection'")
    backbone: str
    status: str = Field(description="Model status: 'active' or 'available'")
    loaded: bool = Field(description="Whether an inference session is open")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
