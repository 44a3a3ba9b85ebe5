"""Confidence filtering and flag-class membership."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from detectserve.ml.tensor_codec import Detection


def apply(detections: Iterable[Detection], threshold: float) -> list[Detection]:
    """Keep detections scoring at or above ``threshold``, in input order."""
    return [d for d in detections if d.score >= threshold]


def is_flagged(detections: Iterable[Detection], flag_class_id: int) -> bool:
    """Return True if any detection has ``flag_class_id``."""
    return any(d.class_id == flag_class_id for d in detections)
