"""Similarity transform solving.

A ``TransformMatrix`` maps source pixels onto a template canvas using only
uniform scale, rotation, and translation. The source eyes center (the pivot)
always lands on the template's eye anchor.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from alignx.alignment.landmarks import Point
from alignx.alignment.templates import absolute_anchors

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from alignx.alignment.landmarks import Landmarks
    from alignx.alignment.templates import Template

# Target eye distance as a fraction of template width.
EYE_DISTANCE_FRACTION: float = 0.25
# Target face height as a fraction of template height.
HEAD_HEIGHT_FRACTION: float = 0.40
# Eyes are the most stable landmark, so they dominate the scale blend.
EYE_SCALE_WEIGHT: float = 0.7


@dataclass(frozen=True)
class TransformMatrix:
    """Similarity transform parameters.

    ``translate_x``/``translate_y`` are the unrotated offsets, i.e. the eye
    anchor minus the scaled pivot. ``rotation`` is in radians, positive is
    clockwise on screen (y axis pointing down).
    """

    scale: float
    rotation: float
    translate_x: float
    translate_y: float
    pivot_x: float
    pivot_y: float

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError(f"Transform scale must be positive, got {self.scale}")

    @property
    def anchor(self) -> Point:
        """Destination of the pivot on the canvas."""
        return Point(
            self.translate_x + self.scale * self.pivot_x,
            self.translate_y + self.scale * self.pivot_y,
        )

    def to_affine(self) -> NDArray[np.float64]:
        """Return the 2x3 matrix: translate(anchor) . rotate . scale . translate(-pivot)."""
        cos_a = math.cos(self.rotation) * self.scale
        sin_a = math.sin(self.rotation) * self.scale
        anchor = self.anchor
        return np.array(
            [
                [cos_a, -sin_a, anchor.x - (cos_a * self.pivot_x - sin_a * self.pivot_y)],
                [sin_a, cos_a, anchor.y - (sin_a * self.pivot_x + cos_a * self.pivot_y)],
            ],
            dtype=np.float64,
        )

    def apply_point(self, point: Point) -> Point:
        """Map a source point onto the canvas."""
        matrix = self.to_affine()
        x = matrix[0, 0] * point.x + matrix[0, 1] * point.y + matrix[0, 2]
        y = matrix[1, 0] * point.x + matrix[1, 1] * point.y + matrix[1, 2]
        return Point(float(x), float(y))


def target_eye_distance(template: Template) -> float:
    return template.width * EYE_DISTANCE_FRACTION


def _build(landmarks: Landmarks, template: Template, scale: float) -> TransformMatrix:
    anchors = absolute_anchors(template)
    eyes = landmarks.eyes_center
    return TransformMatrix(
        scale=scale,
        rotation=-math.radians(landmarks.head_rotation),
        translate_x=anchors.center_x - eyes.x * scale,
        translate_y=anchors.eyes_y - eyes.y * scale,
        pivot_x=eyes.x,
        pivot_y=eyes.y,
    )


def solve(landmarks: Landmarks, template: Template) -> TransformMatrix:
    """Compute a per-image transform from eye distance and face height."""
    eye_scale = target_eye_distance(template) / landmarks.eye_distance
    head_scale = template.height * HEAD_HEIGHT_FRACTION / landmarks.face_height
    scale = eye_scale * EYE_SCALE_WEIGHT + head_scale * (1 - EYE_SCALE_WEIGHT)
    return _build(landmarks, template, scale)


def solve_fixed_scale(landmarks: Landmarks, template: Template, scale: float) -> TransformMatrix:
    """Compute a transform with an externally supplied (batch-wide) scale."""
    if not scale > 0:
        raise ValueError(f"Fixed scale must be positive, got {scale}")
    return _build(landmarks, template, scale)
