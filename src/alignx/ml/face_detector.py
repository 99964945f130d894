"""Face landmark detection.

``FaceDetector`` is the boundary the alignment engine consumes. The bundled
implementation runs a RetinaFace ONNX export (ResNet34 or MobileNetV2
backbone) through the model manager.

All coordinates leaving this module are normalized to [0, 1] of the input
image. Keypoint order: right eye, left eye, nose tip, then either the mouth
center or the right and left mouth corners. "Right" is the subject's right,
which appears on the image left.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from alignx.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawDetection:
    """A single detection in normalized image coordinates.

    Attributes:
        bbox: (x1, y1, x2, y2) in [0, 1].
        score: Detection confidence in [0, 1].
        keypoints: (N, 2) array, N >= 4, in the module keypoint order.
        shoulders: Optional (2, 2) array of right and left shoulder points.
    """

    bbox: NDArray[np.float32]
    score: float
    keypoints: NDArray[np.float32]
    shoulders: NDArray[np.float32] | None = None


class FaceDetector(Protocol):
    """Protocol for landmark detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def initialize(self) -> None:
        """Load model resources. Calling it again must be a no-op."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 BGR uint8 array.

        Returns:
            Detections sorted by score (descending). An empty list means no
            face was found; low-confidence faces are still returned.
        """
        ...


# ---------------------------------------------------------------------------
# RetinaFace
# ---------------------------------------------------------------------------

_MIN_SIZES: tuple[tuple[int, int], ...] = ((16, 32), (64, 128), (256, 512))
_STEPS: tuple[int, ...] = (8, 16, 32)
_VARIANCE: tuple[float, float] = (0.1, 0.2)
_BGR_MEAN = np.array([104.0, 117.0, 123.0], dtype=np.float32)


def generate_priors(height: int, width: int) -> NDArray[np.float32]:
    """Build RetinaFace anchor priors as (cx, cy, w, h), normalized."""
    priors: list[NDArray[np.float32]] = []
    for min_sizes, step in zip(_MIN_SIZES, _STEPS, strict=True):
        rows = math.ceil(height / step)
        cols = math.ceil(width / step)
        cy, cx = np.meshgrid(
            (np.arange(rows, dtype=np.float32) + 0.5) * step / height,
            (np.arange(cols, dtype=np.float32) + 0.5) * step / width,
            indexing="ij",
        )
        centers = np.stack([cx.ravel(), cy.ravel()], axis=1)
        for_cell = []
        for min_size in min_sizes:
            sizes = np.tile(
                np.array([min_size / width, min_size / height], dtype=np.float32),
                (centers.shape[0], 1),
            )
            for_cell.append(np.concatenate([centers, sizes], axis=1))
        # Priors are interleaved per cell: (cell0,size0), (cell0,size1), ...
        priors.append(np.stack(for_cell, axis=1).reshape(-1, 4))
    return np.concatenate(priors, axis=0).astype(np.float32)


def decode_boxes(loc: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
    """Decode regression offsets into (x1, y1, x2, y2) boxes."""
    centers = priors[:, :2] + loc[:, :2] * _VARIANCE[0] * priors[:, 2:]
    sizes = priors[:, 2:] * np.exp(loc[:, 2:] * _VARIANCE[1])
    return np.concatenate([centers - sizes / 2, centers + sizes / 2], axis=1)


def decode_landmarks(landms: NDArray[np.float32], priors: NDArray[np.float32]) -> NDArray[np.float32]:
    """Decode landmark offsets into (N, 5, 2) points."""
    offsets = landms.reshape(-1, 5, 2)
    return priors[:, None, :2] + offsets * _VARIANCE[0] * priors[:, None, 2:]


class RetinaFaceDetector:
    """RetinaFace detector backed by an ONNX Runtime session.

    The session is created lazily on the first ``initialize``/``detect``
    call and reused afterwards.
    """

    def __init__(
        self,
        model_manager: ModelManager,
        model_name: str = "retinaface_resnet34",
        *,
        input_size: int = 640,
        score_threshold: float = 0.5,
        nms_threshold: float = 0.4,
    ) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._input_size = input_size
        self._score_threshold = score_threshold
        self._nms_threshold = nms_threshold
        self._session: InferenceSession | None = None
        self._init_lock = threading.Lock()
        self._priors = generate_priors(input_size, input_size)

    @property
    def model_name(self) -> str:
        return self._model_name

    def initialize(self) -> None:
        """Create the inference session once."""
        self._start_session()

    def _start_session(self) -> InferenceSession:
        with self._init_lock:
            if self._session is None:
                self._session = self._model_manager.get_session(self._model_name)
                logger.info("Initialized detector %s", self._model_name)
            return self._session

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        session = self._start_session() if self._session is None else self._session

        height, width = image.shape[:2]
        blob, ratio = self._preprocess(image)
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: blob})
        loc, conf, landms = self._split_outputs(outputs)

        scores = conf[:, 1]
        keep = scores > self._score_threshold
        if not np.any(keep):
            return []

        priors = self._priors[keep]
        boxes = decode_boxes(loc[keep], priors)
        points = decode_landmarks(landms[keep], priors)
        scores = scores[keep]

        # Map from the padded square input back to the source image.
        scale_x = self._input_size / (ratio * width)
        scale_y = self._input_size / (ratio * height)
        boxes = boxes * np.array([scale_x, scale_y, scale_x, scale_y], dtype=np.float32)
        points = points * np.array([scale_x, scale_y], dtype=np.float32)

        xywh = [[float(b[0]), float(b[1]), float(b[2] - b[0]), float(b[3] - b[1])] for b in boxes]
        indices = np.array(
            cv2.dnn.NMSBoxes(xywh, scores.tolist(), self._score_threshold, self._nms_threshold),
            dtype=np.int64,
        ).flatten()

        detections = [
            RawDetection(
                bbox=np.clip(boxes[i], 0.0, 1.0).astype(np.float32),
                score=float(scores[i]),
                keypoints=points[i].astype(np.float32),
            )
            for i in indices
        ]
        detections.sort(key=lambda d: d.score, reverse=True)
        return detections

    # -- Internal -----------------------------------------------------------

    def _preprocess(self, image: NDArray[np.uint8]) -> tuple[NDArray[np.float32], float]:
        """Resize to fit the square input, pad bottom/right, subtract mean."""
        height, width = image.shape[:2]
        ratio = self._input_size / max(height, width)
        resized = cv2.resize(
            image,
            (max(1, round(width * ratio)), max(1, round(height * ratio))),
            interpolation=cv2.INTER_LINEAR,
        )
        canvas = np.zeros((self._input_size, self._input_size, 3), dtype=np.float32)
        canvas[: resized.shape[0], : resized.shape[1]] = resized
        canvas -= _BGR_MEAN
        blob = canvas.transpose(2, 0, 1)[np.newaxis, ...]
        return np.ascontiguousarray(blob), ratio

    @staticmethod
    def _split_outputs(
        outputs: list[NDArray[np.float32]],
    ) -> tuple[NDArray[np.float32], NDArray[np.float32], NDArray[np.float32]]:
        """Identify loc/conf/landms outputs by their last dimension."""
        by_width = {int(out.shape[-1]): out.reshape(-1, out.shape[-1]) for out in outputs}
        try:
            return by_width[4], by_width[2], by_width[10]
        except KeyError:
            raise RuntimeError(f"Unexpected RetinaFace outputs: {[o.shape for o in outputs]}") from None
