"""Exception hierarchy for DetectServe.

Startup failures derive from ModelLoadError and abort the process. Decode and
inference failures are raised per image and converted to a response or a log
line at the request/file boundary.
"""

from __future__ import annotations


class DetectServeError(Exception):
    """Base class for all DetectServe errors."""


class ModelLoadError(DetectServeError):
    """The model could not be loaded; the process must not serve."""


class ModelNotFoundError(ModelLoadError, FileNotFoundError):
    """The model file does not exist."""


class GraphImportError(ModelLoadError):
    """The model file is not a valid serialized graph."""


class SessionInitError(ModelLoadError):
    """The engine could not bind an executable session to the graph."""


class DecodeError(DetectServeError, ValueError):
    """Input bytes are not a recognized image."""


class ImageTooLargeError(DecodeError):
    """Decoded image would exceed the configured pixel limit."""


class InferenceError(DetectServeError, RuntimeError):
    """The engine failed while executing the graph."""


class UnsupportedImageShape(DetectServeError):
    """Image decoded but cannot be laid out as 8-bit RGB."""

    def __init__(self, mode: str, width: int, height: int) -> None:
        super().__init__(f"Cannot convert image mode {mode!r} to 8-bit RGB")
        self.mode = mode
        self.width = width
        self.height = height
