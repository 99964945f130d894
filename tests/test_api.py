"""Tests for the AlignX HTTP API."""

from __future__ import annotations

import base64
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from alignx.ml.face_detector import RawDetection

import cv2
import httpx
import numpy as np
import pytest
from fastapi import FastAPI, status

from alignx.alignment.landmarks import LandmarkExtractor
from alignx.api.pool import NormalizationPool
from alignx.config import get_settings
from alignx.main import create_app, init_state, shutdown_state
from conftest import FakeDetector, image_record, make_detection

DETECTION = make_detection((200, 150), 60, (400, 400))


def _init_app_state(
    app: FastAPI,
    models_dir: Path,
    responses: list[list[RawDetection]] | None = None,
    **env_overrides: str,
) -> FakeDetector:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, {"ALIGNX_MODELS_DIR": str(models_dir), **env_overrides}):
        settings = get_settings()
    init_state(app, settings)
    detector = FakeDetector(responses or [[DETECTION]])
    app.state.extractor.shutdown()
    app.state.extractor = LandmarkExtractor(detector)
    return detector


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    shutdown_state(app)


def _upload(name: str = "photo.png") -> tuple[str, bytes, str]:
    return (name, image_record(name=name).data, "image/png")


def _decode(payload: str) -> np.ndarray:
    return cv2.imdecode(np.frombuffer(base64.b64decode(payload), np.uint8), cv2.IMREAD_COLOR)


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, tmp_path)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path, ALIGNX_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert {m["name"] for m in models} == {"retinaface_resnet34", "retinaface_mobilenetv2"}
        assert all(m["task"] == "landmark_detection" for m in models)
        assert not any(m["loaded"] for m in models)

    async def test_configured_model_is_active(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ALIGNX_FACE_DETECTION_MODEL="retinaface_mobilenetv2")
        async for ac in _make_client(app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            active = {m["name"] for m in models if m["status"] == "active"}
            assert active == {"retinaface_mobilenetv2"}


class TestTemplatesEndpoint:
    async def test_lists_registered_templates(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/templates")
        assert response.status_code == status.HTTP_200_OK
        templates = {t["key"]: t for t in response.json()["templates"]}
        assert set(templates) == {"professional", "linkedin", "corporate_id"}
        assert templates["corporate_id"]["width"] == 800
        assert templates["corporate_id"]["height"] == 1000
        assert templates["professional"]["eyes_y"] == 0.30


class TestNormalizeEndpoint:
    async def test_normalizes_to_default_template(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/normalize", files={"file": _upload("me.png")})
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["name"] == "me.png"
        assert data["mime_type"] == "image/jpeg"
        assert data["quality"] == "excellent"
        assert _decode(data["image"]).shape == (1024, 1024, 3)
        assert data["metrics"]["eyes_y"] == pytest.approx(150, abs=1e-2)

    async def test_template_query_parameter(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/normalize",
            params={"template": "corporate_id"},
            files={"file": _upload()},
        )
        assert response.status_code == status.HTTP_200_OK
        assert _decode(response.json()["image"]).shape == (1000, 800, 3)

    async def test_strict_mode_returns_original(self, client: httpx.AsyncClient) -> None:
        upload = _upload()
        response = await client.post(
            "/api/v1/normalize",
            params={"strict_mode": "true"},
            files={"file": upload},
        )
        data = response.json()
        assert data["success"] is False
        assert data["validation"]["valid"] is False
        assert base64.b64decode(data["image"]) == upload[1]

    async def test_no_face_returns_original(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, responses=[[]])
        upload = _upload()
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/normalize", files={"file": upload})
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["success"] is False
            assert data["mime_type"] == "image/png"
            assert base64.b64decode(data["image"]) == upload[1]
            assert data["warnings"] == ["Face detection failed: No face detected"]

    async def test_unknown_template_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/normalize",
            params={"template": "passport"},
            files={"file": _upload()},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Unknown template" in response.json()["detail"]

    async def test_malformed_background_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/normalize",
            params={"background_color": "white"},
            files={"file": _upload()},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_oversized_file_is_rejected(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ALIGNX_MAX_FILE_SIZE="100")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/normalize", files={"file": _upload()})
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    async def test_busy_pool_returns_503(self, client: httpx.AsyncClient) -> None:
        with patch.object(NormalizationPool, "normalize_one", side_effect=TimeoutError):
            response = await client.post("/api/v1/normalize", files={"file": _upload()})
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"] == "Server busy"


class TestNormalizeBatchEndpoint:
    async def test_results_in_upload_order_with_report(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, responses=[[DETECTION], [], [DETECTION]])
        files = [("files", _upload(f"{name}.png")) for name in ("a", "b", "c")]
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/normalize-batch", files=files)
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert [r["name"] for r in data["results"]] == ["a.png", "b.png", "c.png"]
            assert [r["success"] for r in data["results"]] == [True, False, True]
            report = data["report"]
            assert report["total_images"] == 3
            assert report["successful"] == 2
            assert report["failed"] == 1
            assert set(report["quality_distribution"]) == {"excellent", "good", "acceptable", "poor"}

    async def test_too_many_files_is_rejected(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ALIGNX_MAX_BATCH_SIZE="2")
        files = [("files", _upload(f"{i}.png")) for i in range(3)]
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/normalize-batch", files=files)
            assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
            assert "exceeds limit of 2" in response.json()["detail"]


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ALIGNX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ALIGNX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, ALIGNX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/normalize",
                headers={"Authorization": "Bearer wrong-key"},
                files={"file": _upload()},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
