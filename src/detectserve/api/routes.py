"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from detectserve.api.schemas import DetectionResponse, ErrorResponse, HealthResponse
from detectserve.errors import DecodeError, ImageTooLargeError, InferenceError

if TYPE_CHECKING:
    from detectserve.config import Settings
    from detectserve.ml.inference import InferencePool
    from detectserve.ml.model import GraphModel
    from detectserve.service import RequestHandler

logger = logging.getLogger(__name__)

router = APIRouter()

USAGE_TEXT = "Try POSTing data to /image\n"
HTTP_413_PAYLOAD_TOO_LARGE = 413


class PayloadTooLargeError(Exception):
    """Request body exceeded the configured size limit."""


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_handler(request: Request) -> RequestHandler:
    handler: RequestHandler = request.app.state.handler
    return handler


def _get_model(request: Request) -> GraphModel:
    model: GraphModel = request.app.state.model
    return model


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


async def _read_body(request: Request, limit: int) -> bytes:
    """Buffer the request body chunk by chunk, enforcing ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(f"Body of {declared} bytes exceeds limit of {limit}")

    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise PayloadTooLargeError(f"Body exceeds limit of {limit} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


@router.get("/", response_class=PlainTextResponse, summary="Usage hint")
async def usage() -> str:
    """Tell the caller where to send images."""
    return USAGE_TEXT


@router.post(
    "/image",
    response_model=None,
    responses={
        status.HTTP_200_OK: {"model": DetectionResponse},
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        HTTP_413_PAYLOAD_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Detect objects in an uploaded image",
)
async def detect_image(request: Request) -> Response:
    """Run detection on the raw image bytes in the request body."""
    settings = _get_settings(request)
    try:
        body = await _read_body(request, settings.max_file_size)
    except PayloadTooLargeError as exc:
        logger.warning("Rejected upload: %s", exc)
        return _error(HTTP_413_PAYLOAD_TOO_LARGE, str(exc))

    pool = _get_inference_pool(request)
    handler = _get_handler(request)
    try:
        payload = await pool.run(handler.handle, body)
    except ImageTooLargeError as exc:
        logger.warning("Rejected upload of %d bytes: %s", len(body), exc)
        return _error(HTTP_413_PAYLOAD_TOO_LARGE, str(exc))
    except DecodeError as exc:
        logger.warning("Rejected upload of %d bytes: %s", len(body), exc)
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))
    except InferenceError as exc:
        logger.exception("Inference failed for upload of %d bytes", len(body))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Server busy, try again later")

    return Response(content=payload, media_type="application/json")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    model = _get_model(request)
    return HealthResponse(
        status="ok",
        model=str(model.path) if model.path is not None else None,
        providers=model.providers,
        threshold=settings.threshold,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )
