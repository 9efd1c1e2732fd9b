"""Tests for the SnapLabel HTTP API."""

from __future__ import annotations

import io
import os
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from snaplabel.config import get_settings
from snaplabel.main import create_app
from snaplabel.ml.errors import InitializationError
from snaplabel.ml.image_classifier import Prediction
from snaplabel.ml.session import SessionController


class _FakeClassifier:
    model_name = "fake"

    def classify(self, tensor: object) -> list[Prediction]:
        return [Prediction("golden retriever", 0.81), Prediction("Labrador retriever", 0.12)]


def _jpeg_bytes(width: int = 320, height: int = 240) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (180, 140, 60)).save(buffer, format="JPEG")
    return buffer.getvalue()


async def _init_app_state(app: FastAPI, tmp_path: Path, load_error: Exception | None = None, **env: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    overrides = {
        "SNAPLABEL_CACHE_DIR": str(tmp_path / "cache"),
        "SNAPLABEL_CONTENT_ROOT": str(tmp_path / "content"),
        "SNAPLABEL_MODELS_DIR": str(tmp_path / "models"),
        "SNAPLABEL_MODEL_REPO_ID": "example-org/mobilenet-onnx",
        **env,
    }
    with patch.dict(os.environ, overrides):
        settings = get_settings()
    manager = MagicMock()
    manager.get_loaded_models.return_value = []
    if load_error is not None:
        manager.load_classifier.side_effect = load_error
    else:
        manager.load_classifier.return_value = _FakeClassifier()
        manager.get_loaded_models.return_value = ["mobilenet_v2_100_224"]

    controller = SessionController(settings, model_manager=manager)
    app.state.settings = settings
    app.state.controller = controller
    try:
        await controller.start()
    except InitializationError:
        pass


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    controller: SessionController = app.state.controller
    controller.shutdown()


@pytest.fixture()
async def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with a started session."""
    application = create_app()
    await _init_app_state(application, tmp_path)
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
        assert data["state"] == "ready"
        assert data["platform"] == "web"
        assert data["backend"] == "gpu_web"
        assert data["model_variant"] == "standard"
        assert data["target_edge"] == 224
        assert data["busy"] is False

    async def test_health_reports_android_profile(self, tmp_path: Path) -> None:
        android_app = create_app()
        await _init_app_state(android_app, tmp_path, SNAPLABEL_PLATFORM="android")
        async for ac in _make_client(android_app):
            data = (await ac.get("/api/v1/health")).json()
            assert data["backend"] == "cpu"
            assert data["model_variant"] == "light"
            assert data["target_edge"] == 96

    async def test_health_unavailable_after_init_failure(self, tmp_path: Path) -> None:
        broken_app = create_app()
        await _init_app_state(broken_app, tmp_path, load_error=InitializationError("no model"))
        async for ac in _make_client(broken_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            data = response.json()
            assert data["status"] == "unavailable"
            assert data["state"] == "init_failed"
            assert data["backend"] is None


class TestClassifyImageEndpoint:
    async def test_classify_upload(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("dog.jpg", io.BytesIO(_jpeg_bytes()), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_200_OK
        predictions = response.json()["predictions"]
        assert predictions[0] == {"label": "golden retriever", "probability": pytest.approx(0.81)}
        assert len(predictions) == 2

    async def test_corrupt_upload_returns_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", io.BytesIO(b"fake image data"), "image/jpeg")},
        )
        assert response.status_code == 422
        assert response.json()["category"] == "decode"

    async def test_empty_upload_is_no_image(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("empty.jpg", io.BytesIO(b""), "image/jpeg")},
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["category"] == "no_image"

    async def test_oversized_upload_returns_413(self, tmp_path: Path) -> None:
        small_app = create_app()
        await _init_app_state(small_app, tmp_path, SNAPLABEL_MAX_FILE_SIZE="100")
        async for ac in _make_client(small_app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("big.jpg", io.BytesIO(_jpeg_bytes()), "image/jpeg")},
            )
            assert response.status_code == 413

    async def test_model_unavailable_returns_503(self, tmp_path: Path) -> None:
        broken_app = create_app()
        await _init_app_state(broken_app, tmp_path, load_error=InitializationError("no model"))
        async for ac in _make_client(broken_app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("dog.jpg", io.BytesIO(_jpeg_bytes()), "image/jpeg")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert response.json()["category"] == "model_unavailable"

    @pytest.mark.parametrize("payload", [_jpeg_bytes(), b"fake image data"], ids=["valid", "corrupt"])
    async def test_upload_and_cache_copy_are_deleted(
        self, client: httpx.AsyncClient, tmp_path: Path, payload: bytes
    ) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("dog.jpg", io.BytesIO(payload), "image/jpeg")},
        )
        assert response.status_code in (status.HTTP_200_OK, 422)
        assert list((tmp_path / "content" / "uploads").iterdir()) == []
        assert list((tmp_path / "cache").iterdir()) == []

    async def test_rejected_upload_is_deleted(self, tmp_path: Path) -> None:
        broken_app = create_app()
        await _init_app_state(broken_app, tmp_path, load_error=InitializationError("no model"))
        async for ac in _make_client(broken_app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("dog.jpg", io.BytesIO(_jpeg_bytes()), "image/jpeg")},
            )
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert list((tmp_path / "content" / "uploads").iterdir()) == []


class TestClassifyReferenceEndpoint:
    async def test_classify_file_under_content_root(self, client: httpx.AsyncClient, tmp_path: Path) -> None:
        path = tmp_path / "content" / "camera" / "dog.jpg"
        path.parent.mkdir(parents=True)
        path.write_bytes(_jpeg_bytes())
        response = await client.post("/api/v1/classify", json={"uri": str(path)})
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["predictions"][0]["label"] == "golden retriever"

    async def test_missing_content_returns_reference_error(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify", json={"uri": "content://media/photo123"})
        assert response.status_code == 422
        assert response.json()["category"] == "reference"

    async def test_null_uri_is_no_image(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify", json={"uri": None})
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["category"] == "no_image"

    @pytest.mark.parametrize(
        "make_uri",
        [
            lambda root: str(root / "outside.jpg"),
            lambda root: (root / "outside.jpg").as_uri(),
            lambda root: str(root / "content" / ".." / "outside.jpg"),
            lambda root: "/etc/passwd",
        ],
        ids=["bare-path", "file-uri", "dot-dot", "system-file"],
    )
    async def test_path_outside_service_storage_is_refused(
        self, client: httpx.AsyncClient, tmp_path: Path, make_uri: Callable[[Path], str]
    ) -> None:
        (tmp_path / "outside.jpg").write_bytes(_jpeg_bytes())
        response = await client.post("/api/v1/classify", json={"uri": make_uri(tmp_path)})
        assert response.status_code == 422
        data = response.json()
        assert data["category"] == "reference"
        assert data["detail"] == "Image reference is not accessible"

    async def test_remote_url_refused_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify", json={"uri": "http://127.0.0.1:9/cat.jpg"})
        assert response.status_code == 422
        assert response.json()["category"] == "reference"

    async def test_remote_url_fetched_when_enabled(self, tmp_path: Path) -> None:
        remote_app = create_app()
        await _init_app_state(remote_app, tmp_path, SNAPLABEL_ALLOW_REMOTE_URLS="true")
        async for ac in _make_client(remote_app):
            response = await ac.post("/api/v1/classify", json={"uri": "http://127.0.0.1:9/cat.jpg"})
            assert response.status_code == 422
            assert response.json()["category"] == "decode"


class TestModelsEndpoint:
    async def test_models_returns_registry(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert {m["name"] for m in models} == {"mobilenet_v2_035_96", "mobilenet_v2_100_224"}

    async def test_standard_model_active_on_web(self, client: httpx.AsyncClient) -> None:
        models = (await client.get("/api/v1/models")).json()["models"]
        active_names = {m["name"] for m in models if m["status"] == "active"}
        assert active_names == {"mobilenet_v2_100_224"}

    async def test_light_model_active_on_android(self, tmp_path: Path) -> None:
        android_app = create_app()
        await _init_app_state(android_app, tmp_path, SNAPLABEL_PLATFORM="android")
        async for ac in _make_client(android_app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            light = next(m for m in models if m["name"] == "mobilenet_v2_035_96")
            assert light["status"] == "active"
            assert light["input_edge"] == 96

    async def test_models_report_width_and_loaded_sessions(self, client: httpx.AsyncClient) -> None:
        models = {m["name"]: m for m in (await client.get("/api/v1/models")).json()["models"]}
        assert models["mobilenet_v2_100_224"]["width_multiplier"] == 1.0
        assert models["mobilenet_v2_100_224"]["loaded"] is True
        assert models["mobilenet_v2_035_96"]["width_multiplier"] == 0.35
        assert models["mobilenet_v2_035_96"]["loaded"] is False


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        await _init_app_state(app, tmp_path, SNAPLABEL_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self, tmp_path: Path) -> None:
        app = create_app()
        await _init_app_state(app, tmp_path, SNAPLABEL_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        await _init_app_state(app, tmp_path, SNAPLABEL_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify",
                json={"uri": None},
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_api_key_header(self, tmp_path: Path) -> None:
        app = create_app()
        await _init_app_state(app, tmp_path, SNAPLABEL_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            ok = await ac.get("/api/v1/health", headers={"X-API-Key": "test-secret-key"})
            wrong = await ac.get("/api/v1/health", headers={"X-API-Key": "wrong-key"})
            assert ok.status_code == status.HTTP_200_OK
            assert wrong.status_code == status.HTTP_401_UNAUTHORIZED
