"""Batch mode: run detection over every file in a directory, one at a time."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from detectserve.api.schemas import DetectionResponse
from detectserve.errors import DecodeError, InferenceError

if TYPE_CHECKING:
    from collections.abc import Callable

    from detectserve.service import DetectionResult, InferenceService

logger = logging.getLogger(__name__)


@dataclass
class BatchSummary:
    """Counts for one directory walk."""

    processed: int = 0
    flagged: int = 0
    failed: list[Path] = field(default_factory=list)


def print_result(path: Path, result: DetectionResult) -> None:
    """Write one ``path: <json>`` line to stdout."""
    print(f"{path}: {DetectionResponse.from_result(result).model_dump_json(by_alias=True)}")  # noqa: T201


def run_batch(
    directory: str | Path,
    service: InferenceService,
    on_result: Callable[[Path, DetectionResult], None] = print_result,
) -> BatchSummary:
    """Process the regular files directly inside ``directory``, in name order.

    A file that fails for any reason is logged and counted in
    ``BatchSummary.failed``; it never stops the walk.

    Raises:
        NotADirectoryError: If ``directory`` is not a directory.
    """
    root = Path(directory)
    if not root.is_dir():
        raise NotADirectoryError(f"{root} is not a directory")

    summary = BatchSummary()
    for path in sorted(p for p in root.iterdir() if p.is_file()):
        try:
            result = service.process(path.read_bytes())
        except (OSError, DecodeError) as exc:
            logger.warning("Skipping %s: %s", path, exc)
            summary.failed.append(path)
            continue
        except InferenceError:
            logger.exception("Inference failed for %s", path)
            summary.failed.append(path)
            continue
        except Exception:
            logger.exception("Unexpected failure processing %s", path)
            summary.failed.append(path)
            continue

        summary.processed += 1
        if result.flagged:
            summary.flagged += 1
        on_result(path, result)

    logger.info(
        "Batch done: %d processed, %d flagged, %d failed in %s",
        summary.processed,
        summary.flagged,
        len(summary.failed),
        root,
    )
    return summary
