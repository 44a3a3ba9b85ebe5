"""Graph model: load an ONNX detection graph once and run it per image.

The loaded session is shared by every request. ONNX Runtime allows concurrent
``InferenceSession.run`` calls on one session and allocates outputs per call,
so by default no lock is taken. With ``serialize_inference`` enabled a lock is
held around the ``run`` call only, never around decoding or filtering.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode, InvalidGraph, InvalidProtobuf

from detectserve.errors import (
    GraphImportError,
    InferenceError,
    ModelLoadError,
    ModelNotFoundError,
    SessionInitError,
)
from detectserve.ml.tensor_codec import Detection, decode_outputs

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from detectserve.config import Settings
    from detectserve.ml.tensor_codec import ImageTensor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class InferenceModel(Protocol):
    """Anything that turns an image tensor into detections."""

    def infer(self, tensor: ImageTensor) -> list[Detection]:
        """Run the graph on one (1, H, W, 3) uint8 tensor."""
        ...


class EngineSession(Protocol):
    """The subset of ``onnxruntime.InferenceSession`` the model relies on."""

    def get_inputs(self) -> list[Any]: ...

    def get_outputs(self) -> list[Any]: ...

    def get_providers(self) -> list[str]: ...

    def run(self, output_names: list[str], input_feed: dict[str, Any]) -> list[Any]: ...


# ---------------------------------------------------------------------------
# Output pairing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputPair:
    """Scores and class ids requested together from one run, index-aligned."""

    scores: NDArray[Any]
    classes: NDArray[Any]

    @classmethod
    def from_outputs(cls, scores: object, classes: object) -> OutputPair:
        """Flatten the two engine outputs, failing if they are not aligned."""
        flat_scores = np.asarray(scores).ravel()
        flat_classes = np.asarray(classes).ravel()
        if flat_scores.shape != flat_classes.shape:
            raise InferenceError(
                f"Engine returned {flat_scores.size} scores but {flat_classes.size} classes"
            )
        return cls(scores=flat_scores, classes=flat_classes)

    def score_values(self) -> list[float]:
        """Scores as Python floats.

        A float32 score is widened through its shortest decimal form, so an
        engine's ``0.95`` stays ``0.95`` rather than ``0.949999988079071``.
        Wider dtypes are passed through unchanged.
        """
        if self.scores.dtype == np.float32:
            return [float(str(score)) for score in self.scores]
        return [float(score) for score in self.scores.tolist()]

    def detections(self) -> list[Detection]:
        return decode_outputs(self.score_values(), self.classes.tolist())


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class GraphModel:
    """A loaded detection graph with its bound execution session."""

    def __init__(
        self,
        session: EngineSession,
        *,
        input_name: str,
        scores_output: str,
        classes_output: str,
        serialize: bool = False,
        path: Path | None = None,
    ) -> None:
        self._session: EngineSession | None = session
        self._input_name = input_name
        self._output_names = [scores_output, classes_output]
        self._path = path
        self._run_lock = threading.Lock() if serialize else None

        available_inputs = {node.name for node in session.get_inputs()}
        available_outputs = {node.name for node in session.get_outputs()}
        self._missing = sorted(
            ({input_name} - available_inputs) | (set(self._output_names) - available_outputs)
        )
        if self._missing:
            logger.warning("Graph has no binding named %s; inference will fail", ", ".join(self._missing))

    @classmethod
    def load(cls, path: str | Path, settings: Settings) -> GraphModel:
        """Read a serialized graph from disk and bind a session to it.

        Raises:
            ModelNotFoundError: If ``path`` does not exist.
            ModelLoadError: If the file cannot be read.
            GraphImportError: If the bytes are not a valid graph.
            SessionInitError: If the engine cannot create a session.
        """
        model_path = Path(path)
        if not model_path.exists():
            raise ModelNotFoundError(
                f"Model file {model_path} not found; export the frozen graph to ONNX "
                "and point --model or DETECTSERVE_MODEL_PATH at it"
            )
        try:
            proto = model_path.read_bytes()
        except OSError as exc:
            raise ModelLoadError(f"Cannot read model file {model_path}: {exc}") from exc

        try:
            session = InferenceSession(
                proto,
                sess_options=_build_session_options(settings),
                providers=_build_providers(settings),
            )
        except (InvalidProtobuf, InvalidGraph) as exc:
            raise GraphImportError(f"{model_path} is not a valid serialized graph: {exc}") from exc
        except Exception as exc:
            raise SessionInitError(f"Cannot create an inference session for {model_path}: {exc}") from exc

        model = cls(
            session,
            input_name=settings.input_name,
            scores_output=settings.scores_output,
            classes_output=settings.classes_output,
            serialize=settings.serialize_inference,
            path=model_path,
        )
        logger.info(
            "Loaded graph %s (%d bytes, providers=%s, serialized=%s)",
            model_path,
            len(proto),
            model.providers,
            settings.serialize_inference,
        )
        return model

    # -- Public API ---------------------------------------------------------

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def input_name(self) -> str:
        return self._input_name

    @property
    def output_names(self) -> list[str]:
        return list(self._output_names)

    @property
    def providers(self) -> list[str]:
        if self._session is None:
            return []
        return list(self._session.get_providers())

    def infer(self, tensor: ImageTensor) -> list[Detection]:
        """Run the graph on one tensor and return detections in engine order.

        Raises:
            InferenceError: On a missing binding, an engine failure, or
                misaligned outputs.
        """
        session = self._session
        if session is None:
            raise InferenceError("Model has been closed")
        if self._missing:
            raise InferenceError(f"Graph has no binding named {', '.join(self._missing)}")

        feed = {self._input_name: tensor}
        try:
            if self._run_lock is None:
                scores, classes = session.run(self._output_names, feed)
            else:
                with self._run_lock:
                    scores, classes = session.run(self._output_names, feed)
        except Exception as exc:
            raise InferenceError(f"Graph execution failed: {exc}") from exc

        return OutputPair.from_outputs(scores, classes).detections()

    def close(self) -> None:
        """Drop the session; later ``infer`` calls fail."""
        self._session = None
        logger.info("Model session released")


# ---------------------------------------------------------------------------
# Session construction
# ---------------------------------------------------------------------------


def _build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    device = settings.device
    if device == "cuda":
        return [("CUDAExecutionProvider", {"device_id": 0}), "CPUExecutionProvider"]
    if device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def _build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
