"""Shared fixtures: a stub ONNX session and image builders."""

from __future__ import annotations

import io
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image, PngImagePlugin

from detectserve.config import Settings
from detectserve.ml.model import GraphModel

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

INPUT = "image_tensor:0"
SCORES = "detection_scores:0"
CLASSES = "detection_classes:0"


@dataclass(frozen=True)
class _Node:
    name: str


class StubSession:
    """Stands in for onnxruntime.InferenceSession.

    ``respond`` maps the input tensor to ``(scores, classes)``. Outputs come back
    with a leading batch axis, like the real detection graph.
    """

    def __init__(
        self,
        respond: Callable[[NDArray[np.uint8]], tuple[Sequence[float], Sequence[float]]],
        *,
        delay: float = 0.0,
        inputs: Sequence[str] = (INPUT,),
        outputs: Sequence[str] = (SCORES, CLASSES),
    ) -> None:
        self.respond = respond
        self.delay = delay
        self.inputs = list(inputs)
        self.outputs = list(outputs)
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def get_inputs(self) -> list[_Node]:
        return [_Node(name) for name in self.inputs]

    def get_outputs(self) -> list[_Node]:
        return [_Node(name) for name in self.outputs]

    def get_providers(self) -> list[str]:
        return ["CPUExecutionProvider"]

    def run(self, output_names: list[str], input_feed: dict[str, NDArray[np.uint8]]) -> list[NDArray[np.float32]]:
        tensor = input_feed[INPUT]
        with self._lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            scores, classes = self.respond(tensor)
        finally:
            with self._lock:
                self.active -= 1
        produced = {
            SCORES: np.array([scores], dtype=np.float32),
            CLASSES: np.array([classes], dtype=np.float32),
        }
        return [produced[name] for name in output_names]


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "threshold": 0.8,
        "flag_class": 6,
        "max_concurrent": 4,
        "queue_timeout": 5.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def make_model(session: StubSession, *, serialize: bool = False) -> GraphModel:
    return GraphModel(
        session,
        input_name=INPUT,
        scores_output=SCORES,
        classes_output=CLASSES,
        serialize=serialize,
    )


def image_bytes(
    width: int = 10,
    height: int = 10,
    color: int | tuple[int, ...] = (0, 0, 0),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def oversized_text_png(width: int = 4, height: int = 4) -> bytes:
    """A PNG whose zTXt chunk inflates past Pillow's text limit, so opening it raises ValueError."""
    info = PngImagePlugin.PngInfo()
    info.add_text("comment", "x" * (8 * 1024 * 1024), zip=True)
    buffer = io.BytesIO()
    Image.new("RGB", (width, height)).save(buffer, format="PNG", pnginfo=info)
    return buffer.getvalue()


def always_selfie(tensor: NDArray[np.uint8]) -> tuple[list[float], list[float]]:
    return [0.95], [6.0]


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def selfie_session() -> StubSession:
    """Engine that always reports class 6 at 0.95."""
    return StubSession(always_selfie)
