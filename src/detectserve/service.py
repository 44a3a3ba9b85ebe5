"""Inference service: raw image bytes to a filtered, annotated result."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from detectserve.api.schemas import DetectionResponse
from detectserve.errors import UnsupportedImageShape
from detectserve.ml import detection_filter, tensor_codec
from detectserve.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from detectserve.config import Settings
    from detectserve.ml.model import InferenceModel
    from detectserve.ml.tensor_codec import Detection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    """Matches for one image, with the image's dimensions."""

    image_width: int
    image_height: int
    matches: tuple[Detection, ...]
    flagged: bool


class InferenceService:
    """Decode, encode, infer and filter one image at a time.

    Holds no per-request state, so one instance serves every concurrent request.
    """

    def __init__(self, model: InferenceModel, settings: Settings) -> None:
        self._model = model
        self._threshold = settings.threshold
        self._flag_class = settings.flag_class
        self._max_pixels = settings.max_image_pixels
        self._strict_rgb = settings.strict_rgb

    @property
    def threshold(self) -> float:
        return self._threshold

    def process(self, image_bytes: bytes) -> DetectionResult:
        """Run the full pipeline on encoded image bytes.

        Images that decode but cannot be laid out as 8-bit RGB yield no matches.

        Raises:
            DecodeError: If the bytes are not a readable image.
            InferenceError: If graph execution fails.
        """
        started = time.perf_counter()
        image = decode_image(image_bytes, max_pixels=self._max_pixels, strict_rgb=self._strict_rgb)
        try:
            rgb = image.require_rgb()
        except UnsupportedImageShape as exc:
            logger.info("Skipping %dx%d image: %s", exc.width, exc.height, exc)
            return DetectionResult(image.width, image.height, matches=(), flagged=False)

        tensor = tensor_codec.encode(rgb, image.width, image.height)
        detections = self._model.infer(tensor)
        matches = detection_filter.apply(detections, self._threshold)
        flagged = detection_filter.is_flagged(matches, self._flag_class)

        logger.debug(
            "Processed %dx%d image: %d/%d candidates matched, flagged=%s (%.1f ms)",
            image.width,
            image.height,
            len(matches),
            len(detections),
            flagged,
            (time.perf_counter() - started) * 1000,
        )
        return DetectionResult(image.width, image.height, matches=tuple(matches), flagged=flagged)


class RequestHandler(Protocol):
    """Maps a request body to a response body."""

    def handle(self, body: bytes) -> bytes:
        """Return the encoded reply for ``body``; raise on failure."""
        ...


class JsonResultHandler:
    """Serves ``InferenceService.process`` results as JSON."""

    def __init__(self, service: InferenceService) -> None:
        self._service = service

    def handle(self, body: bytes) -> bytes:
        result = self._service.process(body)
        return DetectionResponse.from_result(result).model_dump_json(by_alias=True).encode()
