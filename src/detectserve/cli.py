"""Command-line entry point.

Usage:
    detectserve serve --model graph.onnx [--host 0.0.0.0] [--port 8080]
    detectserve batch --model graph.onnx --image-dir photos/ [--threshold 0.8]

Any option not given on the command line falls back to DETECTSERVE_* settings.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

import uvicorn
from pydantic import ValidationError

from detectserve.batch import run_batch
from detectserve.config import Settings, configure_logging, get_settings
from detectserve.errors import ModelLoadError
from detectserve.ml.model import GraphModel
from detectserve.ml.model_source import resolve_model_path
from detectserve.service import InferenceService

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="detectserve", description="Object detection server for a frozen ONNX graph")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="log verbosity")
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-m", "--model", dest="model_path", help="ONNX graph file")
    common.add_argument("--threshold", type=float, help="minimum match score, inclusive (default 0.8)")

    serve = sub.add_parser("serve", parents=[common], help="serve POST /image over HTTP")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)

    batch = sub.add_parser("batch", parents=[common], help="scan a directory of images")
    batch.add_argument("--image-dir", required=True, help="directory to scan (not recursive)")
    return parser


def _settings_from_args(args: argparse.Namespace) -> Settings:
    keys = ("log_level", "model_path", "threshold", "host", "port")
    overrides = {k: getattr(args, k) for k in keys if getattr(args, k, None) is not None}
    return get_settings(**overrides)


def _serve(settings: Settings) -> int:
    from detectserve.main import create_app

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def _batch(settings: Settings, image_dir: str) -> int:
    try:
        model = GraphModel.load(resolve_model_path(settings), settings)
    except ModelLoadError as exc:
        logger.error("Cannot load model: %s", exc)
        return 1

    try:
        summary = run_batch(image_dir, InferenceService(model, settings))
    except NotADirectoryError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        model.close()

    logger.info("%d images processed, %d flagged", summary.processed, summary.flagged)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = _settings_from_args(args)
    except ValidationError as exc:
        print(f"detectserve: invalid configuration\n{exc}", file=sys.stderr)  # noqa: T201
        return 2

    configure_logging(settings.log_level)
    if args.command == "serve":
        return _serve(settings)
    return _batch(settings, args.image_dir)


if __name__ == "__main__":
    sys.exit(main())
