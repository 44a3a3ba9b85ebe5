"""Tests for the DetectServe HTTP surface."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import numpy as np
import pytest
from conftest import StubSession, always_selfie, image_bytes, make_model, make_settings, oversized_text_png
from fastapi import FastAPI, status

from detectserve.api.routes import HTTP_413_PAYLOAD_TOO_LARGE, USAGE_TEXT
from detectserve.errors import ModelNotFoundError
from detectserve.main import create_app, lifespan
from detectserve.ml.inference import InferencePool
from detectserve.service import InferenceService, JsonResultHandler


def _init_app_state(app: FastAPI, session: StubSession, **overrides: object) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    settings = make_settings(**overrides)
    model = make_model(session)
    service = InferenceService(model, settings)
    app.state.settings = settings
    app.state.model = model
    app.state.handler = JsonResultHandler(service)
    app.state.inference_pool = InferencePool(settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _red_channel_echo(tensor: np.ndarray) -> tuple[list[float], list[float]]:
    """Report the image's red value as the class id."""
    return [0.9], [float(tensor[0, 0, 0, 0])]


@pytest.fixture()
def app(selfie_session: StubSession) -> FastAPI:
    """Create a fresh app against an engine that always sees a selfie."""
    application = create_app()
    _init_app_state(application, selfie_session)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestUsageEndpoint:
    async def test_returns_help_text(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/")
        assert response.status_code == status.HTTP_200_OK
        assert response.text == USAGE_TEXT
        assert response.headers["content-type"].startswith("text/plain")

    async def test_unchanged_after_other_requests(self, client: httpx.AsyncClient) -> None:
        await client.post("/image", content=b"garbage")
        await client.post("/image", content=image_bytes())
        await client.get("/nowhere")
        response = await client.get("/")
        assert response.status_code == status.HTTP_200_OK
        assert response.text == USAGE_TEXT


class TestImageEndpoint:
    async def test_black_image_is_flagged(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/image", content=image_bytes(10, 10, (0, 0, 0)))

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {
            "dimensions": {"width": 10, "height": 10},
            "matches": [{"class": 6, "score": 0.95}],
            "is_flagged": True,
        }
        assert b'"score":0.95' in response.content

    async def test_high_threshold_yields_no_matches(self, selfie_session: StubSession) -> None:
        strict_app = create_app()
        _init_app_state(strict_app, selfie_session, threshold=0.99)
        async for ac in _make_client(strict_app):
            response = await ac.post("/image", content=image_bytes(10, 10))
            assert response.status_code == status.HTTP_200_OK
            assert response.json() == {
                "dimensions": {"width": 10, "height": 10},
                "matches": [],
                "is_flagged": False,
            }

    async def test_garbage_then_good_request(self, client: httpx.AsyncClient) -> None:
        bad = await client.post("/image", content=b"this is not an image")
        assert bad.status_code == status.HTTP_400_BAD_REQUEST
        assert "error" in bad.json()
        assert "decode" in bad.json()["error"].lower()

        good = await client.post("/image", content=image_bytes(10, 10))
        assert good.status_code == status.HTTP_200_OK
        assert good.json()["is_flagged"] is True

    async def test_malformed_png_then_good_request(self, client: httpx.AsyncClient) -> None:
        bad = await client.post("/image", content=oversized_text_png())
        assert bad.status_code == status.HTTP_400_BAD_REQUEST
        assert bad.headers["content-type"] == "application/json"
        assert "Cannot decode image" in bad.json()["error"]

        good = await client.post("/image", content=image_bytes(10, 10))
        assert good.status_code == status.HTTP_200_OK
        assert good.json()["is_flagged"] is True

    async def test_empty_body(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/image", content=b"")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "error" in response.json()

    async def test_unsupported_mode_returns_empty_matches(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/image", content=image_bytes(4, 3, 1000, mode="I;16"))
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "dimensions": {"width": 4, "height": 3},
            "matches": [],
            "is_flagged": False,
        }

    async def test_inference_failure_returns_error_envelope(self) -> None:
        def explode(tensor: np.ndarray) -> tuple[list[float], list[float]]:
            raise RuntimeError("engine exploded")

        failing_app = create_app()
        _init_app_state(failing_app, StubSession(explode))
        async for ac in _make_client(failing_app):
            response = await ac.post("/image", content=image_bytes())
            assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
            assert "engine exploded" in response.json()["error"]

            assert (await ac.get("/")).status_code == status.HTTP_200_OK

    async def test_body_over_limit(self, selfie_session: StubSession) -> None:
        small_app = create_app()
        _init_app_state(small_app, selfie_session, max_file_size=16)
        async for ac in _make_client(small_app):
            response = await ac.post("/image", content=image_bytes())
            assert response.status_code == HTTP_413_PAYLOAD_TOO_LARGE
            assert "limit" in response.json()["error"]

    async def test_chunked_body_over_limit(self, selfie_session: StubSession) -> None:
        async def chunks() -> AsyncIterator[bytes]:
            for _ in range(4):
                yield b"x" * 8

        small_app = create_app()
        _init_app_state(small_app, selfie_session, max_file_size=16)
        async for ac in _make_client(small_app):
            response = await ac.post("/image", content=chunks())
            assert response.status_code == HTTP_413_PAYLOAD_TOO_LARGE

    async def test_chunked_body_is_reassembled(self, client: httpx.AsyncClient) -> None:
        data = image_bytes(10, 10)

        async def chunks() -> AsyncIterator[bytes]:
            for start in range(0, len(data), 7):
                yield data[start : start + 7]

        response = await client.post("/image", content=chunks())
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["dimensions"] == {"width": 10, "height": 10}

    async def test_image_over_pixel_limit(self, selfie_session: StubSession) -> None:
        small_app = create_app()
        _init_app_state(small_app, selfie_session, max_image_pixels=50)
        async for ac in _make_client(small_app):
            response = await ac.post("/image", content=image_bytes(10, 10))
            assert response.status_code == HTTP_413_PAYLOAD_TOO_LARGE

    async def test_concurrent_requests_get_their_own_results(self) -> None:
        session = StubSession(_red_channel_echo, delay=0.02)
        echo_app = create_app()
        _init_app_state(echo_app, session, threshold=0.5)
        reds = [0, 1, 2, 3, 4, 5, 6, 7]
        async for ac in _make_client(echo_app):
            responses = await asyncio.gather(
                *(ac.post("/image", content=image_bytes(8, 8, (red, 0, 0))) for red in reds)
            )
            for red, response in zip(reds, responses, strict=True):
                assert response.status_code == status.HTTP_200_OK
                data = response.json()
                assert [m["class"] for m in data["matches"]] == [red]
                assert data["is_flagged"] is (red == 6)
        assert session.calls == len(reds)

    async def test_busy_server_returns_503(self) -> None:
        session = StubSession(always_selfie, delay=0.5)
        busy_app = create_app()
        _init_app_state(busy_app, session, max_concurrent=1, queue_timeout=0.05)
        async for ac in _make_client(busy_app):
            responses = await asyncio.gather(
                ac.post("/image", content=image_bytes()),
                ac.post("/image", content=image_bytes()),
            )
            by_status = {r.status_code: r for r in responses}
            assert sorted(by_status) == [status.HTTP_200_OK, status.HTTP_503_SERVICE_UNAVAILABLE]
            busy = by_status[status.HTTP_503_SERVICE_UNAVAILABLE]
            assert busy.headers["content-type"] == "application/json"
            assert busy.json() == {"error": "Server busy, try again later"}
        assert session.calls == 1


class TestNotFound:
    @pytest.mark.parametrize(
        ("method", "path"),
        [("GET", "/nowhere"), ("POST", "/"), ("GET", "/image"), ("PUT", "/image"), ("POST", "/images")],
    )
    async def test_unknown_routes(self, client: httpx.AsyncClient, method: str, path: str) -> None:
        response = await client.request(method, path)
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.text == "Not Found\n"


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["providers"] == ["CPUExecutionProvider"]
        assert data["threshold"] == pytest.approx(0.8)
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)


class TestLifespan:
    async def test_missing_model_aborts_startup(self, tmp_path: Path) -> None:
        app = create_app(make_settings(model_path=str(tmp_path / "missing.onnx")))
        with pytest.raises(ModelNotFoundError):
            async with lifespan(app):
                pass

    async def test_unconfigured_model_aborts_startup(self) -> None:
        app = create_app(make_settings())
        with pytest.raises(ModelNotFoundError, match="DETECTSERVE_MODEL_PATH"):
            async with lifespan(app):
                pass

    async def test_startup_and_shutdown(self, tmp_path: Path) -> None:
        model_file = tmp_path / "graph.onnx"
        model_file.write_bytes(b"graph")
        app = create_app(make_settings(model_path=str(model_file)))

        with patch("detectserve.ml.model.InferenceSession", return_value=StubSession(always_selfie)):
            async with lifespan(app):
                assert app.state.model.path == model_file
                assert isinstance(app.state.handler, JsonResultHandler)
                assert not hasattr(app.state, "service")
                async with httpx.AsyncClient(
                    transport=httpx.ASGITransport(app=app), base_url="http://testserver"
                ) as ac:
                    response = await ac.post("/image", content=image_bytes())
                    assert response.json()["is_flagged"] is True

        assert app.state.model.providers == []
