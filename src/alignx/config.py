"""Environment-based configuration for AlignX.

``Settings`` covers the service process (read from ALIGNX_* variables).
``NormalizationConfig`` is the engine configuration: an explicit, closed set
of fields with documented defaults. Unknown fields are rejected.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from alignx.alignment.templates import TEMPLATE_REGISTRY, Template, get_template

OutputMimeType = Literal["image/jpeg", "image/png", "image/webp"]

_HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class ShoulderPolicy(BaseModel):
    """Plausibility rules for shoulder landmarks.

    Shoulders are trusted only when they sit below the eyes, far enough from
    them, and wide enough, each measured in multiples of the eye distance.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Minimum vertical eyes -> shoulders distance, in eye distances.
    min_eye_to_shoulder_ratio: float = Field(default=1.5, gt=0)
    # Minimum shoulder width, in eye distances.
    min_width_ratio: float = Field(default=1.5, gt=0)
    # Accept shoulders estimated from face geometry when the detector has none.
    accept_estimated: bool = True


class AnalysisPolicy(BaseModel):
    """Thresholds for pose issues and quality tiers."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Nose horizontal offset from the eyes center, in eye distances.
    frontal_nose_offset_ratio: float = Field(default=0.15, gt=0)
    max_head_tilt: float = Field(default=5.0, ge=0)
    max_shoulder_rotation: float = Field(default=5.0, ge=0)
    max_head_shoulder_misalignment: float = Field(default=5.0, ge=0)
    # Below this, a detection is reported as low confidence.
    min_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    excellent_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    good_confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class NormalizationConfig(BaseModel):
    """Engine configuration for single-image and batch normalization."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Registry key of the output template.
    template: str = "professional"
    # Canvas fill for pixels the source image does not cover.
    background_color: str = Field(default="#F5F5F5", pattern=_HEX_COLOR_PATTERN)
    # Reject images with template errors instead of only warning.
    strict_mode: bool = False
    # Attach warnings to successful results.
    show_warnings: bool = True
    output_mime_type: OutputMimeType = "image/jpeg"
    output_quality: int = Field(default=92, ge=1, le=100)
    # Seconds per detection call; None waits forever.
    detection_timeout: float | None = Field(default=30.0, gt=0)
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    shoulders: ShoulderPolicy = Field(default_factory=ShoulderPolicy)
    analysis: AnalysisPolicy = Field(default_factory=AnalysisPolicy)

    @field_validator("template")
    @classmethod
    def _known_template(cls, value: str) -> str:
        key = value.lower()
        if key not in TEMPLATE_REGISTRY:
            raise ValueError(f"Unknown template: {value}")
        return key

    def resolve_template(self) -> Template:
        """Return the ``Template`` this configuration points at."""
        return get_template(self.template)


class Settings(BaseSettings):
    """Application settings loaded from ALIGNX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ALIGNX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    face_detection_model: str = "retinaface_resnet34"
    models_dir: str = "models"
    detection_score_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)
    # Seconds a request may wait for a free slot before getting 503.
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)
    max_batch_size: int = Field(default=50, ge=1)

    # Model storage (None = registry default repository)
    models_repo: str | None = None
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Normalization defaults
    template: str = "professional"
    background_color: str = Field(default="#F5F5F5", pattern=_HEX_COLOR_PATTERN)
    strict_mode: bool = False
    show_warnings: bool = True
    output_mime_type: OutputMimeType = "image/jpeg"
    output_quality: int = Field(default=92, ge=1, le=100)
    detection_timeout: float | None = Field(default=30.0, gt=0)

    def normalization_config(self, **overrides: object) -> NormalizationConfig:
        """Build the engine configuration from these settings.

        Keyword overrides replace individual fields (e.g. a per-request
        template).
        """
        values: dict[str, object] = {
            "template": self.template,
            "background_color": self.background_color,
            "strict_mode": self.strict_mode,
            "show_warnings": self.show_warnings,
            "output_mime_type": self.output_mime_type,
            "output_quality": self.output_quality,
            "detection_timeout": self.detection_timeout,
            "max_image_pixels": self.max_image_pixels,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return NormalizationConfig(**values)  # type: ignore[arg-type]


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
