"""Resolve where the graph file comes from: a local path or the Hugging Face Hub."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download

from detectserve.errors import ModelLoadError, ModelNotFoundError

if TYPE_CHECKING:
    from detectserve.config import Settings

logger = logging.getLogger(__name__)


def resolve_model_path(settings: Settings) -> Path:
    """Return a local path to the graph file.

    ``model_path`` wins when set. Otherwise ``model_filename`` is fetched from
    ``model_repo`` into ``models_dir``, reusing a previous download.

    Raises:
        ModelNotFoundError: If no source is configured or the file is missing.
        ModelLoadError: If the download fails.
    """
    if settings.model_path:
        return Path(settings.model_path)

    if not settings.model_repo:
        raise ModelNotFoundError(
            "No model configured: pass --model or set DETECTSERVE_MODEL_PATH "
            "(or DETECTSERVE_MODEL_REPO to download one)"
        )

    models_dir = Path(settings.models_dir)
    local = models_dir / settings.model_filename
    if local.is_file():
        logger.info("Using cached model %s", local)
        return local

    models_dir.mkdir(parents=True, exist_ok=True)
    try:
        downloaded = Path(
            hf_hub_download(
                repo_id=settings.model_repo,
                filename=settings.model_filename,
                local_dir=str(models_dir),
            )
        )
    except Exception as exc:
        raise ModelLoadError(
            f"Failed to download {settings.model_filename} from {settings.model_repo}: {exc}"
        ) from exc
    logger.info("Downloaded %s from %s to %s", settings.model_filename, settings.model_repo, downloaded)
    return downloaded
