"""Fixed headshot templates.

Anchor points are fractions of the canvas: every vertical anchor is a
fraction of ``height`` and ``shoulders_width`` is a fraction of ``width``.
Templates are process-wide constants and must not be mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, fields


@dataclass(frozen=True)
class AnchorPoints:
    """Target landmark positions as fractions of the canvas."""

    eyes_y: float
    nose_y: float
    chin_y: float
    neck_center_y: float
    shoulders_y: float
    shoulders_width: float

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Anchor {f.name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class Tolerances:
    """Maximum accepted deviations for a template."""

    eye_height_variation: float  # px
    shoulder_height_variation: float  # px
    head_size_variation: float  # fraction
    rotation_angle: float  # degrees


@dataclass(frozen=True)
class Template:
    """A named output layout: canvas size, anchors and tolerances."""

    name: str
    width: int
    height: int
    anchor_points: AnchorPoints
    tolerances: Tolerances

    def __post_init__(self) -> None:
        for attr in ("width", "height"):
            value = getattr(self, attr)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"Template {attr} must be a positive integer, got {value!r}")


@dataclass(frozen=True)
class AbsoluteAnchors:
    """Template anchors resolved to pixel coordinates."""

    eyes_y: float
    nose_y: float
    chin_y: float
    neck_center_y: float
    shoulders_y: float
    shoulders_width: float
    center_x: float


_DEFAULT_TOLERANCES = Tolerances(
    eye_height_variation=2,
    shoulder_height_variation=3,
    head_size_variation=0.05,
    rotation_angle=3,
)

PROFESSIONAL = Template(
    name="Professional Corporate Headshot",
    width=1024,
    height=1024,
    anchor_points=AnchorPoints(
        eyes_y=0.30,
        nose_y=0.38,
        chin_y=0.48,
        neck_center_y=0.50,
        shoulders_y=0.60,
        shoulders_width=0.70,
    ),
    tolerances=_DEFAULT_TOLERANCES,
)

# Tighter framing, face dominates the canvas.
LINKEDIN = Template(
    name="LinkedIn Profile Headshot",
    width=1024,
    height=1024,
    anchor_points=AnchorPoints(
        eyes_y=0.33,
        nose_y=0.42,
        chin_y=0.52,
        neck_center_y=0.56,
        shoulders_y=0.68,
        shoulders_width=0.75,
    ),
    tolerances=_DEFAULT_TOLERANCES,
)

# Portrait badge, shows more of the shoulders.
CORPORATE_ID = Template(
    name="Corporate ID Badge",
    width=800,
    height=1000,
    anchor_points=AnchorPoints(
        eyes_y=0.28,
        nose_y=0.36,
        chin_y=0.44,
        neck_center_y=0.48,
        shoulders_y=0.58,
        shoulders_width=0.65,
    ),
    tolerances=_DEFAULT_TOLERANCES,
)

TEMPLATE_REGISTRY: dict[str, Template] = {
    "professional": PROFESSIONAL,
    "linkedin": LINKEDIN,
    "corporate_id": CORPORATE_ID,
}


def get_template(name: str) -> Template:
    """Look up a template by registry key (case-insensitive)."""
    try:
        return TEMPLATE_REGISTRY[name.lower()]
    except KeyError:
        raise KeyError(f"Unknown template: {name}") from None


def absolute_anchors(template: Template) -> AbsoluteAnchors:
    """Resolve a template's fractional anchors to pixel coordinates."""
    anchors = template.anchor_points
    return AbsoluteAnchors(
        eyes_y=template.height * anchors.eyes_y,
        nose_y=template.height * anchors.nose_y,
        chin_y=template.height * anchors.chin_y,
        neck_center_y=template.height * anchors.neck_center_y,
        shoulders_y=template.height * anchors.shoulders_y,
        shoulders_width=template.width * anchors.shoulders_width,
        center_x=template.width / 2,
    )
