"""Binary real/fake classifier.

The model returns two logits ``[fake, real]`` for a 128x128 ImageNet-normalized
crop; a two-way softmax turns them into probabilities.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from deepfakex.errors import MalformedOutputError
from deepfakex.ml.tensors import IMAGENET_NORMALIZATION, build_tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from deepfakex.ml.backend import InferenceBackend, ModelHandle

logger = logging.getLogger(__name__)

CLASSIFIER_INPUT_NAME = "input"
DEFAULT_CLASSIFIER_INPUT_SIZE = 128


class Label(StrEnum):
    FAKE = "Fake"
    REAL = "Real"


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one image region."""

    label: Label
    confidence: float
    fake_probability: float
    real_probability: float


def softmax2(fake_logit: float, real_logit: float) -> tuple[float, float]:
    """Two-way softmax. Returns ``(p_fake, p_real)``."""
    shift = max(fake_logit, real_logit)
    exp_fake = np.exp(fake_logit - shift)
    exp_real = np.exp(real_logit - shift)
    total = exp_fake + exp_real
    return float(exp_fake / total), float(exp_real / total)


class DeepfakeClassifier:
    """Classifies an image region as Fake or Real."""

    def __init__(
        self,
        backend: InferenceBackend,
        handle: ModelHandle,
        input_size: int = DEFAULT_CLASSIFIER_INPUT_SIZE,
    ) -> None:
        self._backend = backend
        self._handle = handle
        self._input_size = input_size

    @property
    def model_name(self) -> str:
        return self._handle.model_id

    def close(self) -> None:
        self._backend.release(self._handle)

    def classify(self, image: NDArray[np.uint8]) -> Classification:
        """Classify ``image``.

        Raises:
            InvalidDimensionError: If the image cannot be turned into a tensor.
            BackendError: If the model fails to run.
            MalformedOutputError: If the model output is not a finite ``[1, 2]`` tensor.
        """
        tensor = build_tensor(image, self._input_size, IMAGENET_NORMALIZATION)
        outputs = self._backend.run(self._handle, CLASSIFIER_INPUT_NAME, tensor)
        fake_logit, real_logit = self._logits(outputs)

        p_fake, p_real = softmax2(fake_logit, real_logit)
        # Ties go to Fake.
        if p_fake >= p_real:
            label, confidence = Label.FAKE, p_fake
        else:
            label, confidence = Label.REAL, p_real

        logger.debug("Classified region as %s (%.4f)", label, confidence)
        return Classification(
            label=label,
            confidence=confidence,
            fake_probability=p_fake,
            real_probability=p_real,
        )

    @staticmethod
    def _logits(outputs: dict[str, NDArray[np.float32]]) -> tuple[float, float]:
        if not outputs:
            raise MalformedOutputError("Classifier returned no outputs")

        raw = np.asarray(next(iter(outputs.values())))
        if raw.shape != (1, 2):
            raise MalformedOutputError(f"Classifier output must have shape [1, 2], got {list(raw.shape)}")
        if not np.all(np.isfinite(raw)):
            raise MalformedOutputError("Classifier output contains non-finite logits")
        return float(raw[0, 0]), float(raw[0, 1])
