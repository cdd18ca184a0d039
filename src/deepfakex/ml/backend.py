"""Inference backend: the single boundary between the pipeline and a model runtime.

The pipeline only ever sees :class:`InferenceBackend`. Session caching,
downloads and execution providers live behind it in
:mod:`deepfakex.ml.model_manager`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from deepfakex.errors import BackendExecutionError, BackendUnavailableError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from deepfakex.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelHandle:
    """Opaque reference to a model loaded by a backend."""

    model_id: str


class InferenceBackend(Protocol):
    """Protocol for anything that can execute a named model."""

    def load(self, model_id: str) -> ModelHandle:
        """Make ``model_id`` ready to run and return a handle for it.

        Raises:
            BackendUnavailableError: If the model cannot be resolved or loaded.
        """
        ...

    def run(self, handle: ModelHandle, input_name: str, tensor: NDArray[np.float32]) -> dict[str, NDArray[np.float32]]:
        """Execute the model with a single named input.

        Returns:
            Output tensors keyed by output name, in the model's output order.

        Raises:
            BackendExecutionError: If execution fails.
        """
        ...

    def release(self, handle: ModelHandle) -> None:
        """Free any resources held for ``handle``."""
        ...


class OnnxInferenceBackend:
    """InferenceBackend backed by cached ONNX Runtime sessions.

    Sessions are shared between threads; ONNX Runtime allows concurrent
    ``run`` calls on one session.
    """

    def __init__(self, model_manager: ModelManager) -> None:
        self._model_manager = model_manager

    def load(self, model_id: str) -> ModelHandle:
        try:
            self._model_manager.get_session(model_id)
        except Exception as exc:
            raise BackendUnavailableError(f"Could not load model '{model_id}': {exc}") from exc
        logger.info("Model %s ready", model_id)
        return ModelHandle(model_id=model_id)

    def run(self, handle: ModelHandle, input_name: str, tensor: NDArray[np.float32]) -> dict[str, NDArray[np.float32]]:
        try:
            session = self._model_manager.get_session(handle.model_id)
        except Exception as exc:
            raise BackendUnavailableError(f"Model '{handle.model_id}' is not available: {exc}") from exc

        try:
            output_names = [output.name for output in session.get_outputs()]
            values = session.run(output_names, {input_name: tensor})
        except Exception as exc:
            raise BackendExecutionError(f"Model '{handle.model_id}' failed: {exc}") from exc

        return dict(zip(output_names, values, strict=True))

    def release(self, handle: ModelHandle) -> None:
        self._model_manager.unload(handle.model_id)
