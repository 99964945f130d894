"""Landmark extraction and pose analysis.

Converts raw detector output into a pixel-space ``Landmarks`` record with
derived metrics (eye distance, head rotation, frontal pose, shoulders), and
grades the pose into a quality tier.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, NamedTuple

from alignx.alignment.errors import DetectionTimeoutError, DetectorBusyError, ImageDecodeError
from alignx.config import AnalysisPolicy, ShoulderPolicy

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from alignx.ml.face_detector import FaceDetector, RawDetection

logger = logging.getLogger(__name__)

# Anatomical shoulder estimate, in eye distances.
SHOULDER_OFFSET_RATIO: float = 2.5
SHOULDER_WIDTH_RATIO: float = 3.5

# Face box fallbacks when the detector box is degenerate, in eye distances.
FACE_WIDTH_FALLBACK_RATIO: float = 3.0
FACE_HEIGHT_FALLBACK_RATIO: float = 4.0


class Point(NamedTuple):
    x: float
    y: float


class BoundingBox(NamedTuple):
    x: float
    y: float
    width: float
    height: float


class ShoulderSource(StrEnum):
    DETECTED = "detected"
    REFERENCE = "reference"
    ANATOMICAL = "anatomical"


@dataclass(frozen=True)
class ShoulderEstimate:
    center: Point
    width: float
    rotation: float  # degrees
    eye_to_shoulder_distance: float
    source: ShoulderSource


@dataclass(frozen=True)
class Landmarks:
    """Pixel-space landmarks and derived metrics for one face.

    ``right_eye`` is the subject's right eye, on the image left.
    ``head_rotation`` is the signed angle in degrees of the line from
    ``right_eye`` to ``left_eye``; positive means the image-right eye is
    lower.
    """

    right_eye: Point
    left_eye: Point
    nose: Point
    mouth: Point
    eyes_center: Point
    eye_distance: float
    head_rotation: float
    head_tilt: float
    face_width: float
    face_height: float
    head_size: float
    bbox: BoundingBox
    confidence: float
    is_frontal: bool
    shoulders: ShoulderEstimate
    image_width: int
    image_height: int

    def __post_init__(self) -> None:
        if not self.eye_distance > 0:
            raise ValueError(f"eye_distance must be positive, got {self.eye_distance}")


@dataclass(frozen=True)
class DetectionFailure:
    """No usable face was found. Expected and recoverable."""

    reason: str


# ---------------------------------------------------------------------------
# Raw detection -> Landmarks
# ---------------------------------------------------------------------------


def _to_pixels(points: NDArray[np.float32], width: int, height: int) -> list[Point]:
    return [Point(float(x) * width, float(y) * height) for x, y in points]


def _distance(a: Point, b: Point) -> float:
    return math.hypot(b.x - a.x, b.y - a.y)


def _angle(a: Point, b: Point) -> float:
    return math.degrees(math.atan2(b.y - a.y, b.x - a.x))


def estimate_shoulders(eyes_center: Point, eye_distance: float, head_rotation: float) -> ShoulderEstimate:
    """Place shoulders along the face's downward axis from the eyes."""
    theta = math.radians(head_rotation)
    offset = SHOULDER_OFFSET_RATIO * eye_distance
    center = Point(
        eyes_center.x - offset * math.sin(theta),
        eyes_center.y + offset * math.cos(theta),
    )
    return ShoulderEstimate(
        center=center,
        width=SHOULDER_WIDTH_RATIO * eye_distance,
        rotation=0.0,
        eye_to_shoulder_distance=center.y - eyes_center.y,
        source=ShoulderSource.ANATOMICAL,
    )


def build_landmarks(
    detection: RawDetection,
    image_width: int,
    image_height: int,
    policy: AnalysisPolicy | None = None,
) -> Landmarks | DetectionFailure:
    """Derive a ``Landmarks`` record from a normalized raw detection."""
    policy = policy or AnalysisPolicy()
    if len(detection.keypoints) < 4:
        return DetectionFailure(f"Detector returned {len(detection.keypoints)} keypoints, need at least 4")

    points = _to_pixels(detection.keypoints, image_width, image_height)
    right_eye, left_eye, nose = points[0], points[1], points[2]
    if len(points) == 4:
        mouth = points[3]
    else:
        mouth = Point((points[3].x + points[4].x) / 2, (points[3].y + points[4].y) / 2)

    eye_distance = _distance(right_eye, left_eye)
    if eye_distance <= 0:
        return DetectionFailure("Eyes coincide; eye distance is zero")

    eyes_center = Point((right_eye.x + left_eye.x) / 2, (right_eye.y + left_eye.y) / 2)
    head_rotation = _angle(right_eye, left_eye)

    x1, y1, x2, y2 = (float(v) for v in detection.bbox)
    bbox = BoundingBox(
        x=x1 * image_width,
        y=y1 * image_height,
        width=(x2 - x1) * image_width,
        height=(y2 - y1) * image_height,
    )
    face_width = bbox.width if bbox.width > 0 else eye_distance * FACE_WIDTH_FALLBACK_RATIO
    face_height = bbox.height if bbox.height > 0 else eye_distance * FACE_HEIGHT_FALLBACK_RATIO

    if detection.shoulders is not None:
        right_shoulder, left_shoulder = _to_pixels(detection.shoulders, image_width, image_height)[:2]
        center = Point(
            (right_shoulder.x + left_shoulder.x) / 2,
            (right_shoulder.y + left_shoulder.y) / 2,
        )
        shoulders = ShoulderEstimate(
            center=center,
            width=_distance(right_shoulder, left_shoulder),
            rotation=_angle(right_shoulder, left_shoulder),
            eye_to_shoulder_distance=center.y - eyes_center.y,
            source=ShoulderSource.DETECTED,
        )
    else:
        shoulders = estimate_shoulders(eyes_center, eye_distance, head_rotation)

    return Landmarks(
        right_eye=right_eye,
        left_eye=left_eye,
        nose=nose,
        mouth=mouth,
        eyes_center=eyes_center,
        eye_distance=eye_distance,
        head_rotation=head_rotation,
        head_tilt=abs(head_rotation),
        face_width=face_width,
        face_height=face_height,
        head_size=(face_width + face_height) / 2,
        bbox=bbox,
        confidence=min(max(detection.score, 0.0), 1.0),
        is_frontal=abs(nose.x - eyes_center.x) < policy.frontal_nose_offset_ratio * eye_distance,
        shoulders=shoulders,
        image_width=image_width,
        image_height=image_height,
    )


def is_shoulder_detection_valid(landmarks: Landmarks, policy: ShoulderPolicy | None = None) -> bool:
    """Return True when the shoulder landmarks are anatomically plausible."""
    policy = policy or ShoulderPolicy()
    shoulders = landmarks.shoulders
    if shoulders.source is not ShoulderSource.DETECTED and not policy.accept_estimated:
        return False
    below_eyes = shoulders.center.y > landmarks.eyes_center.y
    far_enough = shoulders.eye_to_shoulder_distance > landmarks.eye_distance * policy.min_eye_to_shoulder_ratio
    wide_enough = shoulders.width > landmarks.eye_distance * policy.min_width_ratio
    return below_eyes and far_enough and wide_enough


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class LandmarkExtractor:
    """Runs the detector with exclusive access and builds ``Landmarks``.

    Detector calls are serialized through a lock and a single worker thread,
    so non-reentrant backends are safe and a per-call timeout can be
    enforced.
    """

    def __init__(self, detector: FaceDetector, policy: AnalysisPolicy | None = None) -> None:
        self._detector = detector
        self._policy = policy or AnalysisPolicy()
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="landmark-detection")
        self._initialized = False

    @property
    def detector(self) -> FaceDetector:
        return self._detector

    def initialize(self) -> None:
        """Initialize the detector once; later calls do nothing."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            self._detector.initialize()
            self._initialized = True

    def extract(self, image: NDArray[np.uint8], timeout: float | None = None) -> Landmarks | DetectionFailure:
        """Detect the most confident face in ``image``.

        The timeout counts from the moment the detector starts on this image.
        A call abandoned after an earlier timeout may still hold the detector;
        waiting for it is bounded by ``timeout`` as well.

        Raises:
            ImageDecodeError: If ``image`` is empty.
            DetectorBusyError: If an earlier call keeps the detector for ``timeout`` seconds.
            DetectionTimeoutError: If the detector exceeds ``timeout`` seconds.
        """
        if image is None or image.size == 0 or image.ndim < 2:
            raise ImageDecodeError("Cannot extract landmarks from an empty image")

        self.initialize()
        started = threading.Event()
        future = self._executor.submit(self._detect_exclusive, image, started)
        if not started.wait(timeout) and future.cancel():
            raise DetectorBusyError(f"Detector busy after an earlier timeout; not started within {timeout}s")
        try:
            detections = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise DetectionTimeoutError(f"Landmark detection exceeded {timeout}s") from None

        if not detections:
            return DetectionFailure("No face detected")

        best = max(detections, key=lambda d: d.score)
        height, width = image.shape[:2]
        return build_landmarks(best, width, height, self._policy)

    def shutdown(self) -> None:
        """Stop the detection worker thread."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _detect_exclusive(self, image: NDArray[np.uint8], started: threading.Event) -> list[RawDetection]:
        with self._lock:
            started.set()
            return self._detector.detect(image)


# ---------------------------------------------------------------------------
# Pose analysis
# ---------------------------------------------------------------------------


class QualityTier(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    POOR = "poor"


@dataclass(frozen=True)
class PoseAnalysis:
    landmarks: Landmarks
    issues: tuple[str, ...]
    recommendations: tuple[str, ...]
    quality: QualityTier


def grade_quality(issue_count: int, confidence: float, policy: AnalysisPolicy | None = None) -> QualityTier:
    """Bucket an image by issue count and detection confidence."""
    policy = policy or AnalysisPolicy()
    if issue_count == 0 and confidence > policy.excellent_confidence:
        return QualityTier.EXCELLENT
    if issue_count <= 1 and confidence > policy.good_confidence:
        return QualityTier.GOOD
    if issue_count <= 2:
        return QualityTier.ACCEPTABLE
    return QualityTier.POOR


def analyze_pose(landmarks: Landmarks, policy: AnalysisPolicy | None = None) -> PoseAnalysis:
    """List pose problems with recommendations and grade the result."""
    policy = policy or AnalysisPolicy()
    issues: list[str] = []
    recommendations: list[str] = []
    detected_shoulders = landmarks.shoulders.source is ShoulderSource.DETECTED

    if not landmarks.is_frontal:
        offset = abs(landmarks.nose.x - landmarks.eyes_center.x) / landmarks.eye_distance
        issues.append(f"Face turned away from camera (nose offset {offset * 100:.0f}% of eye distance)")
        recommendations.append("Request a frontal photo facing the camera")

    if detected_shoulders:
        misalignment = abs(landmarks.head_rotation - landmarks.shoulders.rotation)
        if misalignment > policy.max_head_shoulder_misalignment:
            issues.append(f"Head and shoulders misaligned ({misalignment:.1f}° difference)")
            recommendations.append("Align the head with the shoulders")

    if landmarks.head_tilt > policy.max_head_tilt:
        issues.append(f"Head tilted {landmarks.head_tilt:.1f}°")
        recommendations.append("Straighten the head horizontally")

    if detected_shoulders and abs(landmarks.shoulders.rotation) > policy.max_shoulder_rotation:
        issues.append(f"Shoulders not level ({abs(landmarks.shoulders.rotation):.1f}°)")
        recommendations.append("Level the shoulders horizontally")

    if landmarks.confidence < policy.min_confidence:
        issues.append("Low detection confidence")
        recommendations.append("Use a better lit, higher resolution photo")

    return PoseAnalysis(
        landmarks=landmarks,
        issues=tuple(issues),
        recommendations=tuple(recommendations),
        quality=grade_quality(len(issues), landmarks.confidence, policy),
    )
