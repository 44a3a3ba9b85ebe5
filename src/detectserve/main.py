"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from starlette.requests import Request
    from starlette.responses import Response

from fastapi import FastAPI, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from detectserve.api.routes import router
from detectserve.config import Settings, configure_logging, get_settings
from detectserve.ml.inference import InferencePool
from detectserve.ml.model import GraphModel
from detectserve.ml.model_source import resolve_model_path
from detectserve.service import InferenceService, JsonResultHandler

logger = logging.getLogger(__name__)

NOT_FOUND_TEXT = "Not Found\n"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown.

    A ModelLoadError propagates and aborts startup.
    """
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    app.state.settings = settings

    configure_logging(settings.log_level)

    logger.info(
        "Starting DetectServe (device=%s, max_concurrent=%s, threshold=%s, flag_class=%s)",
        settings.device,
        settings.max_concurrent,
        settings.threshold,
        settings.flag_class,
    )

    model = GraphModel.load(resolve_model_path(settings), settings)
    service = InferenceService(model, settings)
    app.state.model = model
    app.state.handler = JsonResultHandler(service)

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("DetectServe ready on %s:%s", settings.host, settings.port)
    yield

    logger.info("Shutting down DetectServe")
    inference_pool.shutdown()
    model.close()
    logger.info("DetectServe shutdown complete")


async def _not_found_handler(request: Request, exc: Exception) -> Response:
    """Answer unknown routes and wrong methods with one static 404 body."""
    if isinstance(exc, StarletteHTTPException) and exc.status_code in (
        status.HTTP_404_NOT_FOUND,
        status.HTTP_405_METHOD_NOT_ALLOWED,
    ):
        return PlainTextResponse(NOT_FOUND_TEXT, status_code=status.HTTP_404_NOT_FOUND)
    return await http_exception_handler(request, exc)  # type: ignore[arg-type]


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``settings`` overrides the environment, e.g. values parsed from the CLI.
    """
    application = FastAPI(
        title="DetectServe",
        description="Object detection inference server for a frozen ONNX graph",
        version="0.1.0",
        lifespan=lifespan,
    )
    if settings is not None:
        application.state.settings = settings

    application.add_exception_handler(StarletteHTTPException, _not_found_handler)
    application.include_router(router)
    return application


app = create_app()
