"""Detection model registry and ONNX session loading.

Landmark models are resolved from ``models_dir`` first and fetched from the
HuggingFace Hub otherwise. Each model gets one InferenceSession that lives as
long as the process; the detector holds on to it after the first call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from alignx.config import Settings

logger = logging.getLogger(__name__)


class ModelManager(Protocol):
    """What the detector needs from model storage."""

    def get_session(self, model_name: str) -> InferenceSession: ...

    def get_loaded_models(self) -> list[str]: ...

    def shutdown(self) -> None: ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    LANDMARK_DETECTION = "landmark_detection"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a landmark detection export."""

    name: str
    repo_id: str
    filename: str
    task: ModelTask
    license: str
    backbone: str
    input_size: int = 640


_MODELS_REPO = "danielcopper/recognizex-models"

MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(
            name="retinaface_resnet34",
            repo_id=_MODELS_REPO,
            filename="retinaface_resnet34.onnx",
            task=ModelTask.LANDMARK_DETECTION,
            license="MIT",
            backbone="resnet34",
        ),
        # Smaller and faster, slightly less precise eye landmarks.
        ModelSpec(
            name="retinaface_mobilenetv2",
            repo_id=_MODELS_REPO,
            filename="retinaface_mobilenetv2.onnx",
            task=ModelTask.LANDMARK_DETECTION,
            license="MIT",
            backbone="mobilenetv2",
        ),
    )
}


def get_model_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


def build_providers(device: str, gpu_mem_limit: int = 0) -> list[str | tuple[str, dict[str, object]]]:
    """Execution providers for ``device``, always ending with the CPU fallback."""
    if device == "cuda":
        cuda_options: dict[str, object] = {"device_id": 0, "arena_extend_strategy": "kSameAsRequested"}
        if gpu_mem_limit:
            cuda_options["gpu_mem_limit"] = gpu_mem_limit
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    # Detection runs one image at a time behind the extractor lock.
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Resolves model files and owns one InferenceSession per model."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}

        self._providers = build_providers(settings.device, settings.gpu_mem_limit)
        self._session_options = build_session_options(settings)

    def model_path(self, model_name: str) -> Path:
        """Return the local model file, downloading it when missing."""
        spec = get_model_spec(model_name)
        local = self._models_dir / spec.filename
        if local.is_file():
            return local

        repo_id = self._settings.models_repo or spec.repo_id
        logger.info("Fetching %s from %s", spec.filename, repo_id)
        return Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=spec.filename,
                local_dir=str(self._models_dir),
            )
        )

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the session for ``model_name``, loading it on first use."""
        with self._lock:
            session = self._sessions.get(model_name)
            if session is None:
                path = self.model_path(model_name)
                session = InferenceSession(
                    str(path),
                    sess_options=self._session_options,
                    providers=self._providers,
                )
                self._sessions[model_name] = session
                logger.info("Loaded %s on %s", model_name, session.get_providers()[0])
            return session

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def shutdown(self) -> None:
        with self._lock:
            self._sessions.clear()
        logger.info("Model sessions released")
