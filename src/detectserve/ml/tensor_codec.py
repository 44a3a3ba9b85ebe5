"""Conversion between decoded images, engine input tensors, and detections.

The engine input is a uint8 tensor of shape (1, H, W, 3): one image, row-major,
with R, G, B interleaved per pixel. The pixel at (x, y), channel c lives at flat
offset ``(y * W + x) * 3 + c``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TypeAlias

import numpy as np
from numpy.typing import NDArray

ImageTensor: TypeAlias = NDArray[np.uint8]

CHANNELS = 3


@dataclass(frozen=True)
class Detection:
    """One (class, score) candidate from a single inference run."""

    class_id: int
    score: float


def encode(rgb: NDArray[np.uint8] | bytes | bytearray | memoryview, width: int, height: int) -> ImageTensor:
    """Lay out an RGB buffer as a (1, height, width, 3) uint8 tensor.

    Args:
        rgb: HxWx3 uint8 array, or a flat buffer of ``width * height * 3`` bytes.
        width: Image width in pixels.
        height: Image height in pixels.

    Returns:
        C-contiguous tensor of shape (1, height, width, 3).
    """
    if isinstance(rgb, np.ndarray):
        flat = np.ascontiguousarray(rgb, dtype=np.uint8)
    else:
        flat = np.frombuffer(rgb, dtype=np.uint8)
    return flat.reshape(1, height, width, CHANNELS)


def decode_outputs(scores: Iterable[float], classes: Iterable[float]) -> list[Detection]:
    """Pair engine scores and classes positionally.

    Class ids arrive as floats and are truncated toward zero.

    Raises:
        ValueError: If the two sequences differ in length.
    """
    return [
        Detection(class_id=int(class_value), score=float(score))
        for class_value, score in zip(classes, scores, strict=True)
    ]
