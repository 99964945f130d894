"""Two-pass batch normalization.

Scaling every photo independently leaves faces in a group at different
apparent sizes. The batch therefore runs in two phases:

1. Analyze: decode and detect every image, compute its metrics, do not
   composite.
2. Normalize: using median reference metrics of phase 1, validate each image
   against the batch and render it with one shared scale.

Phase 2 needs the complete phase 1 output, so the phases never overlap.
Every error stays with its own image; a batch of N inputs always yields N
results in input order.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from alignx.alignment.compositor import render
from alignx.alignment.errors import AlignmentError
from alignx.alignment.job import ImageJob, ImageState
from alignx.alignment.landmarks import (
    DetectionFailure,
    Landmarks,
    PoseAnalysis,
    ShoulderSource,
    analyze_pose,
    estimate_shoulders,
    is_shoulder_detection_valid,
)
from alignx.alignment.transform import solve, solve_fixed_scale, target_eye_distance
from alignx.alignment.validation import Metrics, ReferenceMetrics, ValidationResult, validate
from alignx.config import NormalizationConfig
from alignx.ml.preprocessing import decode_image, encode_image

if TYPE_CHECKING:
    from collections.abc import Sequence

    import numpy as np
    from numpy.typing import NDArray

    from alignx.alignment.landmarks import LandmarkExtractor
    from alignx.alignment.templates import Template
    from alignx.ml.preprocessing import ImageRecord

logger = logging.getLogger(__name__)

SHOULDER_FALLBACK_WARNING = "No reliable shoulder detection in batch; reference computed from all detected faces"
CANCELLED_WARNING = "Batch cancelled before this image was processed"


@dataclass(frozen=True)
class NormalizationResult:
    """Outcome for one input image. On failure ``normalized_image`` is the original."""

    success: bool
    normalized_image: ImageRecord
    original_image: ImageRecord
    analysis: PoseAnalysis | None
    validation: ValidationResult | None
    metrics: Metrics
    warnings: tuple[str, ...]
    processing_time_ms: float
    shoulder_detection_valid: bool
    shoulder_source: ShoulderSource | None = None
    stages: tuple[ImageState, ...] = ()


class CancellationToken:
    """Cooperative cancellation flag checked between images."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ---------------------------------------------------------------------------
# Reference metrics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReferenceSample:
    """The phase 1 values of one detected image used for the batch medians."""

    metrics: Metrics
    eye_distance: float
    shoulder_valid: bool


def _median(values: Sequence[float]) -> float:
    # Upper middle element for even counts.
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


def compute_reference(samples: Sequence[ReferenceSample], template: Template) -> ReferenceMetrics | None:
    """Median-based reference over shoulder-valid samples.

    Falls back to every sample when none has valid shoulders. Returns
    ``None`` for an empty input.
    """
    if not samples:
        return None

    pool = [s for s in samples if s.shoulder_valid]
    fallback = not pool
    if fallback:
        pool = list(samples)

    median_eye_distance = _median([s.eye_distance for s in pool])
    return ReferenceMetrics(
        eyes_y=_median([s.metrics.eyes_y for s in pool]),
        shoulders_y=_median([s.metrics.shoulders_y for s in pool]),
        head_size=_median([s.metrics.head_size for s in pool]),
        eye_distance=median_eye_distance,
        fixed_scale=target_eye_distance(template) / median_eye_distance,
        sample_size=len(pool),
        shoulder_fallback=fallback,
    )


def resolve_shoulders_y(
    landmarks: Landmarks,
    shoulder_valid: bool,
    reference: ReferenceMetrics | None,
) -> tuple[float, ShoulderSource]:
    """Pick the shoulder height for an image.

    Precedence: the image's own valid shoulders, then the batch reference
    offset from the eyes, then an anatomical estimate.
    """
    if shoulder_valid:
        return landmarks.shoulders.center.y, landmarks.shoulders.source
    if reference is not None:
        return landmarks.eyes_center.y + (reference.shoulders_y - reference.eyes_y), ShoulderSource.REFERENCE
    estimate = estimate_shoulders(landmarks.eyes_center, landmarks.eye_distance, landmarks.head_rotation)
    return estimate.center.y, ShoulderSource.ANATOMICAL


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


@dataclass
class _ImageAnalysis:
    """Phase 1 state of one image, reused by phase 2."""

    record: ImageRecord
    job: ImageJob
    elapsed: float = 0.0
    image: NDArray[np.uint8] | None = None
    landmarks: Landmarks | None = None
    pose: PoseAnalysis | None = None
    metrics: Metrics = field(default_factory=Metrics.empty)
    shoulder_valid: bool = False
    shoulder_source: ShoulderSource | None = None
    failure: str | None = None

    @property
    def detected(self) -> bool:
        return self.failure is None and self.landmarks is not None


class BatchNormalizer:
    """Normalizes single images or batches onto a template."""

    def __init__(self, extractor: LandmarkExtractor, config: NormalizationConfig | None = None) -> None:
        self._extractor = extractor
        self._config = config or NormalizationConfig()
        self._template = self._config.resolve_template()

    @property
    def config(self) -> NormalizationConfig:
        return self._config

    @property
    def template(self) -> Template:
        return self._template

    def normalize_one(self, record: ImageRecord, reference: ReferenceMetrics | None = None) -> NormalizationResult:
        """Normalize a single image, self-scaled unless a reference is given."""
        return self._normalize(self._analyze(record), reference)

    def normalize_batch(
        self,
        records: Sequence[ImageRecord],
        cancel: CancellationToken | None = None,
    ) -> list[NormalizationResult]:
        """Run the two-phase batch algorithm over ``records``."""
        if not records:
            return []

        logger.info("Normalizing batch of %d images onto %s", len(records), self._template.name)

        # Phase 1: analyze
        analyses: list[_ImageAnalysis] = []
        for index, record in enumerate(records):
            if cancel is not None and cancel.cancelled:
                analyses.append(self._cancelled(record))
                continue
            logger.debug("Analyzing image %d/%d", index + 1, len(records))
            analyses.append(self._analyze(record))

        samples = [
            ReferenceSample(
                metrics=a.metrics,
                eye_distance=a.landmarks.eye_distance,
                shoulder_valid=a.shoulder_valid,
            )
            for a in analyses
            if a.detected and a.landmarks is not None
        ]
        reference = compute_reference(samples, self._template)
        if reference is None:
            logger.warning("No face detected in any of %d images; batch left unchanged", len(records))
            return [self._failure(a) for a in analyses]

        logger.info(
            "Reference metrics: eyes_y=%.1f shoulders_y=%.1f head_size=%.1f fixed_scale=%.4f (n=%d%s)",
            reference.eyes_y,
            reference.shoulders_y,
            reference.head_size,
            reference.fixed_scale,
            reference.sample_size,
            ", shoulder fallback" if reference.shoulder_fallback else "",
        )

        # Phase 2: normalize against the shared reference
        results: list[NormalizationResult] = []
        for analysis in analyses:
            if cancel is not None and cancel.cancelled and not analysis.job.finished:
                analysis.failure = CANCELLED_WARNING
                analysis.job.fail()
            results.append(self._normalize(analysis, reference))

        succeeded = sum(1 for r in results if r.success)
        with_warnings = sum(1 for r in results if r.warnings)
        logger.info("Batch finished: %d/%d succeeded, %d with warnings", succeeded, len(results), with_warnings)
        return results

    # -- Phase 1 ------------------------------------------------------------

    def _analyze(self, record: ImageRecord) -> _ImageAnalysis:
        analysis = _ImageAnalysis(record=record, job=ImageJob(record.name))
        start = time.perf_counter()
        try:
            image = decode_image(record, self._config.max_image_pixels)
            found = self._extractor.extract(image, timeout=self._config.detection_timeout)
        except (AlignmentError, RuntimeError, ValueError) as exc:
            logger.warning("Skipping %s: %s", record.name or "image", exc)
            analysis.failure = str(exc)
            analysis.job.fail()
            analysis.elapsed = time.perf_counter() - start
            return analysis
        except Exception as exc:
            logger.exception("Detection failed for %s", record.name or "image")
            analysis.failure = f"Detection failed: {exc}"
            analysis.job.fail()
            analysis.elapsed = time.perf_counter() - start
            return analysis

        if isinstance(found, DetectionFailure):
            logger.warning("No usable face in %s: %s", record.name or "image", found.reason)
            analysis.failure = f"Face detection failed: {found.reason}"
            analysis.job.fail()
            analysis.elapsed = time.perf_counter() - start
            return analysis

        analysis.job.advance(ImageState.DETECTED)
        analysis.image = image
        analysis.landmarks = found
        analysis.pose = analyze_pose(found, self._config.analysis)
        analysis.shoulder_valid = is_shoulder_detection_valid(found, self._config.shoulders)
        shoulders_y, analysis.shoulder_source = resolve_shoulders_y(found, analysis.shoulder_valid, None)
        analysis.metrics = Metrics(
            eyes_y=found.eyes_center.y,
            shoulders_y=shoulders_y,
            head_size=found.head_size,
            rotation_angle=found.head_rotation,
            shoulder_rotation=found.shoulders.rotation,
        )
        analysis.job.advance(ImageState.METRICS_COMPUTED)
        analysis.elapsed = time.perf_counter() - start
        return analysis

    # -- Phase 2 ------------------------------------------------------------

    def _normalize(self, analysis: _ImageAnalysis, reference: ReferenceMetrics | None) -> NormalizationResult:
        landmarks = analysis.landmarks
        image = analysis.image
        pose = analysis.pose
        if not analysis.detected or analysis.job.finished or landmarks is None or image is None or pose is None:
            return self._failure(analysis)

        start = time.perf_counter()
        config = self._config
        metrics = analysis.metrics
        shoulder_source = analysis.shoulder_source
        extra_warnings: list[str] = []

        if reference is not None:
            shoulders_y, shoulder_source = resolve_shoulders_y(landmarks, analysis.shoulder_valid, reference)
            metrics = replace(metrics, shoulders_y=shoulders_y)
            if reference.shoulder_fallback:
                extra_warnings.append(SHOULDER_FALLBACK_WARNING)
            analysis.job.advance(ImageState.REFERENCE_APPLIED)
        else:
            analysis.job.advance(ImageState.SELF_SCALED)

        if not analysis.shoulder_valid:
            extra_warnings.append(f"Unreliable shoulder detection; using {shoulder_source} shoulder position")

        validation = validate(metrics, self._template, reference)
        warnings = [*pose.issues, *extra_warnings, *validation.messages()]

        def elapsed_ms() -> float:
            return (analysis.elapsed + time.perf_counter() - start) * 1000

        if config.strict_mode and not validation.valid:
            analysis.job.fail()
            return NormalizationResult(
                success=False,
                normalized_image=analysis.record,
                original_image=analysis.record,
                analysis=analysis.pose,
                validation=validation,
                metrics=metrics,
                warnings=tuple(warnings),
                processing_time_ms=elapsed_ms(),
                shoulder_detection_valid=analysis.shoulder_valid,
                shoulder_source=shoulder_source,
                stages=analysis.job.history,
            )

        try:
            if reference is not None:
                transform = solve_fixed_scale(landmarks, self._template, reference.fixed_scale)
            else:
                transform = solve(landmarks, self._template)
            analysis.job.advance(ImageState.TRANSFORMED)

            canvas = render(image, transform, self._template, config.background_color)
            analysis.job.advance(ImageState.COMPOSITED)
            data = encode_image(canvas, config.output_mime_type, config.output_quality)
        except Exception as exc:
            logger.exception("Rendering failed for %s", analysis.record.name or "image")
            analysis.job.fail()
            return NormalizationResult(
                success=False,
                normalized_image=analysis.record,
                original_image=analysis.record,
                analysis=analysis.pose,
                validation=validation,
                metrics=metrics,
                warnings=(*warnings, f"Rendering failed: {exc}"),
                processing_time_ms=elapsed_ms(),
                shoulder_detection_valid=analysis.shoulder_valid,
                shoulder_source=shoulder_source,
                stages=analysis.job.history,
            )

        analysis.job.advance(ImageState.SUCCEEDED)
        return NormalizationResult(
            success=True,
            normalized_image=analysis.record.with_content(data, config.output_mime_type),
            original_image=analysis.record,
            analysis=analysis.pose,
            validation=validation,
            metrics=metrics,
            warnings=tuple(warnings) if config.show_warnings else (),
            processing_time_ms=elapsed_ms(),
            shoulder_detection_valid=analysis.shoulder_valid,
            shoulder_source=shoulder_source,
            stages=analysis.job.history,
        )

    # -- Failures -----------------------------------------------------------

    @staticmethod
    def _cancelled(record: ImageRecord) -> _ImageAnalysis:
        job = ImageJob(record.name)
        job.fail()
        return _ImageAnalysis(record=record, job=job, failure=CANCELLED_WARNING)

    @staticmethod
    def _failure(analysis: _ImageAnalysis) -> NormalizationResult:
        if not analysis.job.finished:
            analysis.job.fail()
        return NormalizationResult(
            success=False,
            normalized_image=analysis.record,
            original_image=analysis.record,
            analysis=analysis.pose,
            validation=None,
            metrics=analysis.metrics,
            warnings=(analysis.failure,) if analysis.failure else (),
            processing_time_ms=analysis.elapsed * 1000,
            shoulder_detection_valid=analysis.shoulder_valid,
            shoulder_source=analysis.shoulder_source,
            stages=analysis.job.history,
        )
