"""Shared test doubles for the alignment engine."""

from __future__ import annotations

import math
import threading
from typing import TYPE_CHECKING

import cv2
import numpy as np

from alignx.ml.face_detector import RawDetection
from alignx.ml.preprocessing import ImageRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray


class FakeDetector:
    """FaceDetector double replaying canned detections.

    Each ``detect`` call consumes the next response; the last one repeats.
    """

    def __init__(self, responses: Sequence[list[RawDetection]]) -> None:
        self._responses = list(responses)
        self.detect_calls = 0
        self.init_calls = 0

    @property
    def model_name(self) -> str:
        return "fake"

    def initialize(self) -> None:
        self.init_calls += 1

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        index = min(self.detect_calls, len(self._responses) - 1)
        self.detect_calls += 1
        return self._responses[index]


class BlockingDetector(FakeDetector):
    """Detector that hangs until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__([[]])
        self.release = threading.Event()

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        self.release.wait(timeout=5)
        return []


def make_detection(
    eyes_center: tuple[float, float],
    eye_distance: float,
    image_size: tuple[int, int],
    *,
    rotation: float = 0.0,
    score: float = 0.95,
    face_size: tuple[float, float] | None = None,
    nose_offset: float = 0.0,
    shoulders: tuple[tuple[float, float], tuple[float, float]] | None = None,
) -> RawDetection:
    """Build a normalized RawDetection from pixel-space geometry.

    Args:
        eyes_center: Eyes center in pixels.
        eye_distance: Distance between the eyes in pixels.
        image_size: (width, height) of the image the detection belongs to.
        rotation: Eye line angle in degrees (positive: image-right eye lower).
        face_size: (width, height) of the face box in pixels.
        nose_offset: Horizontal nose offset from the eyes center in pixels.
        shoulders: Optional right and left shoulder points in pixels.
    """
    width, height = image_size
    cx, cy = eyes_center
    half = eye_distance / 2
    theta = math.radians(rotation)
    dx, dy = half * math.cos(theta), half * math.sin(theta)
    right_eye = (cx - dx, cy - dy)
    left_eye = (cx + dx, cy + dy)
    nose = (cx + nose_offset, cy + eye_distance * 0.6)
    mouth_right = (cx - eye_distance * 0.4, cy + eye_distance * 1.1)
    mouth_left = (cx + eye_distance * 0.4, cy + eye_distance * 1.1)

    face_w, face_h = face_size or (eye_distance * 2.5, eye_distance * 3.2)
    bbox = (cx - face_w / 2, cy - face_h * 0.4, cx + face_w / 2, cy + face_h * 0.6)

    def norm(points: Sequence[tuple[float, float]]) -> NDArray[np.float32]:
        return np.array([[x / width, y / height] for x, y in points], dtype=np.float32)

    return RawDetection(
        bbox=np.array(
            [bbox[0] / width, bbox[1] / height, bbox[2] / width, bbox[3] / height],
            dtype=np.float32,
        ),
        score=score,
        keypoints=norm([right_eye, left_eye, nose, mouth_right, mouth_left]),
        shoulders=norm(list(shoulders)) if shoulders is not None else None,
    )


def image_record(width: int = 400, height: int = 400, name: str = "photo.png") -> ImageRecord:
    """A real PNG of a gray frame with a bright stripe for orientation."""
    image = np.full((height, width, 3), 90, dtype=np.uint8)
    image[: height // 10] = 200
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return ImageRecord(data=encoded.tobytes(), mime_type="image/png", name=name)

