"""Shared fixtures: an in-memory InferenceBackend and pipeline wiring."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest

from deepfakex.errors import BackendExecutionError
from deepfakex.ml.backend import ModelHandle
from deepfakex.ml.classifier import DeepfakeClassifier
from deepfakex.ml.face_detector import FaceDetector
from deepfakex.ml.pipeline import DeepfakeDetector

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

DETECTOR_ID = "test_detector"
CLASSIFIER_ID = "test_classifier"


class FakeBackend:
    """Deterministic stand-in for ONNX Runtime.

    Detector calls return ``detections`` as a ``[1, N, 6]`` tensor. Classifier
    calls return ``logits_fn(tensor)`` when set, otherwise cycle through
    ``logits``. Classifier call numbers listed in ``failing_calls`` raise.
    """

    def __init__(self) -> None:
        self.detections: list[list[float]] = []
        self.detector_output: NDArray[np.float32] | None = None
        self.detector_error: Exception | None = None
        self.logits: list[list[float]] = [[2.0, 0.5]]
        self.logits_fn: Callable[[NDArray[np.float32]], list[float]] | None = None
        self.failing_calls: set[int] = set()
        self.calls: list[tuple[str, str, tuple[int, ...]]] = []
        self.released: list[str] = []
        self._classifier_calls = 0
        self._lock = threading.Lock()

    @property
    def classifier_calls(self) -> int:
        return self._classifier_calls

    def load(self, model_id: str) -> ModelHandle:
        return ModelHandle(model_id=model_id)

    def run(self, handle: ModelHandle, input_name: str, tensor: NDArray[np.float32]) -> dict[str, NDArray[np.float32]]:
        with self._lock:
            self.calls.append((handle.model_id, input_name, tensor.shape))

        if handle.model_id == DETECTOR_ID:
            if self.detector_error is not None:
                raise self.detector_error
            if self.detector_output is not None:
                return {"output0": self.detector_output}
            rows = np.array(self.detections, dtype=np.float32).reshape(1, -1, 6)
            return {"output0": rows}

        with self._lock:
            call = self._classifier_calls
            self._classifier_calls += 1
        if call in self.failing_calls:
            raise BackendExecutionError(f"classifier call {call} failed")
        logits = self.logits_fn(tensor) if self.logits_fn is not None else self.logits[call % len(self.logits)]
        return {"output": np.array([logits], dtype=np.float32)}

    def release(self, handle: ModelHandle) -> None:
        self.released.append(handle.model_id)


def make_pipeline(backend: FakeBackend, **kwargs: object) -> DeepfakeDetector:
    return DeepfakeDetector(
        face_detector=FaceDetector(backend, ModelHandle(DETECTOR_ID)),
        classifier=DeepfakeClassifier(backend, ModelHandle(CLASSIFIER_ID)),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def pipeline(fake_backend: FakeBackend) -> DeepfakeDetector:
    return make_pipeline(fake_backend)


@pytest.fixture()
def pipeline_factory(fake_backend: FakeBackend) -> Callable[..., DeepfakeDetector]:
    """Build a pipeline on ``fake_backend`` with custom constructor arguments."""

    def _make(**kwargs: object) -> DeepfakeDetector:
        return make_pipeline(fake_backend, **kwargs)

    return _make


@pytest.fixture()
def image() -> NDArray[np.uint8]:
    """640x640 RGB test image with a gradient so crops differ."""
    ramp = np.linspace(0, 255, 640, dtype=np.uint8)
    rgb = np.zeros((640, 640, 3), dtype=np.uint8)
    rgb[:, :, 0] = ramp[np.newaxis, :]
    rgb[:, :, 1] = ramp[:, np.newaxis]
    rgb[:, :, 2] = 128
    return rgb
