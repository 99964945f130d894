"""Template and batch-consistency validation of per-image metrics."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from alignx.alignment.templates import absolute_anchors

if TYPE_CHECKING:
    from alignx.alignment.templates import Template


@dataclass(frozen=True)
class Metrics:
    """Per-image measurements in the source image's pixel/degree space."""

    eyes_y: float
    shoulders_y: float
    head_size: float
    rotation_angle: float
    shoulder_rotation: float

    @classmethod
    def empty(cls) -> Metrics:
        return cls(eyes_y=0.0, shoulders_y=0.0, head_size=0.0, rotation_angle=0.0, shoulder_rotation=0.0)


@dataclass(frozen=True)
class ReferenceMetrics:
    """Batch-wide medians shared by every image of one batch run.

    ``shoulder_fallback`` is set when no image had trustworthy shoulders and
    the medians were taken over every detected image instead.
    """

    eyes_y: float
    shoulders_y: float
    head_size: float
    eye_distance: float
    fixed_scale: float
    sample_size: int
    shoulder_fallback: bool = False


class IssueKind(StrEnum):
    EYE_POSITION = "eye_position"
    ROTATION = "rotation"
    SHOULDER_POSITION = "shoulder_position"
    BATCH_EYE_CONSISTENCY = "batch_eye_consistency"
    BATCH_HEAD_SIZE = "batch_head_size"


@dataclass(frozen=True)
class ValidationIssue:
    kind: IssueKind
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class ValidationResult:
    errors: tuple[ValidationIssue, ...]
    warnings: tuple[ValidationIssue, ...]

    @property
    def valid(self) -> bool:
        return not self.errors

    def messages(self) -> list[str]:
        """Warnings followed by errors, as plain strings."""
        return [str(issue) for issue in (*self.warnings, *self.errors)]


def validate(
    metrics: Metrics,
    template: Template,
    reference: ReferenceMetrics | None = None,
) -> ValidationResult:
    """Check metrics against template tolerances and an optional reference.

    Eye height and rotation outside tolerance are errors. Shoulder height is
    only a warning because shoulder estimation is less reliable. Deviations
    from the batch reference are warnings and never affect ``valid``.
    """
    anchors = absolute_anchors(template)
    tolerances = template.tolerances
    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []

    eye_deviation = abs(metrics.eyes_y - anchors.eyes_y)
    if eye_deviation > tolerances.eye_height_variation:
        errors.append(
            ValidationIssue(
                IssueKind.EYE_POSITION,
                f"Eyes off template position: {eye_deviation:.1f}px deviation "
                f"(max {tolerances.eye_height_variation}px)",
            )
        )

    if reference is not None:
        eye_variation = abs(metrics.eyes_y - reference.eyes_y)
        if eye_variation > tolerances.eye_height_variation:
            warnings.append(
                ValidationIssue(
                    IssueKind.BATCH_EYE_CONSISTENCY,
                    f"Inconsistent with batch: {eye_variation:.1f}px eye height difference",
                )
            )

        if reference.head_size > 0:
            head_variation = abs((metrics.head_size - reference.head_size) / reference.head_size)
            if head_variation > tolerances.head_size_variation:
                warnings.append(
                    ValidationIssue(
                        IssueKind.BATCH_HEAD_SIZE,
                        f"Inconsistent head size: {head_variation * 100:.1f}% variation",
                    )
                )

    if abs(metrics.rotation_angle) > tolerances.rotation_angle:
        errors.append(
            ValidationIssue(
                IssueKind.ROTATION,
                f"Head tilted: {metrics.rotation_angle:.1f}° (max ±{tolerances.rotation_angle}°)",
            )
        )

    shoulder_deviation = abs(metrics.shoulders_y - anchors.shoulders_y)
    if shoulder_deviation > tolerances.shoulder_height_variation:
        warnings.append(
            ValidationIssue(
                IssueKind.SHOULDER_POSITION,
                f"Shoulders off template position: {shoulder_deviation:.1f}px deviation",
            )
        )

    return ValidationResult(errors=tuple(errors), warnings=tuple(warnings))
