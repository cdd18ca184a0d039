"""Tests for the real/fake classifier."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import numpy as np
import pytest

from deepfakex.errors import BackendExecutionError, InvalidDimensionError, MalformedOutputError
from deepfakex.ml.backend import ModelHandle
from deepfakex.ml.classifier import DeepfakeClassifier, Label, softmax2

if TYPE_CHECKING:
    from conftest import FakeBackend

CLASSIFIER_ID = "test_classifier"


def _classifier(backend: FakeBackend) -> DeepfakeClassifier:
    return DeepfakeClassifier(backend, ModelHandle(CLASSIFIER_ID), input_size=128)


class TestSoftmax:
    def test_reference_logits(self) -> None:
        p_fake, p_real = softmax2(2.0, 0.5)
        assert p_fake == pytest.approx(1.0 / (1.0 + math.exp(-1.5)))
        assert p_fake == pytest.approx(0.818, abs=1e-3)
        assert p_real == pytest.approx(0.182, abs=1e-3)

    @pytest.mark.parametrize(("fake", "real"), [(0.0, 0.0), (1000.0, -1000.0), (-50.0, 700.0), (3.3, 3.2)])
    def test_probabilities_sum_to_one(self, fake: float, real: float) -> None:
        p_fake, p_real = softmax2(fake, real)
        assert 0.0 <= p_fake <= 1.0
        assert 0.0 <= p_real <= 1.0
        assert p_fake + p_real == pytest.approx(1.0, abs=1e-6)


class TestClassify:
    def test_fake_label(self, fake_backend: FakeBackend, image: np.ndarray) -> None:
        fake_backend.logits = [[2.0, 0.5]]

        result = _classifier(fake_backend).classify(image)

        assert result.label is Label.FAKE
        assert result.confidence == pytest.approx(0.818, abs=1e-3)
        assert result.fake_probability + result.real_probability == pytest.approx(1.0, abs=1e-6)

    def test_real_label(self, fake_backend: FakeBackend, image: np.ndarray) -> None:
        fake_backend.logits = [[0.0, 3.0]]

        result = _classifier(fake_backend).classify(image)

        assert result.label is Label.REAL
        assert result.confidence == pytest.approx(result.real_probability)
        assert result.confidence > 0.9

    def test_tie_favors_fake(self, fake_backend: FakeBackend, image: np.ndarray) -> None:
        fake_backend.logits = [[1.25, 1.25]]

        result = _classifier(fake_backend).classify(image)

        assert result.label is Label.FAKE
        assert result.confidence == pytest.approx(0.5)

    def test_uses_input_name_and_size(self, fake_backend: FakeBackend, image: np.ndarray) -> None:
        _classifier(fake_backend).classify(image)
        assert fake_backend.calls == [(CLASSIFIER_ID, "input", (1, 3, 128, 128))]

    def test_small_crop_is_upscaled(self, fake_backend: FakeBackend) -> None:
        tiny = np.full((3, 2, 3), 200, dtype=np.uint8)
        _classifier(fake_backend).classify(tiny)
        assert fake_backend.calls[0][2] == (1, 3, 128, 128)

    @pytest.mark.parametrize("logits", [[1.0, 2.0, 3.0], [1.0]])
    def test_wrong_shape_raises(self, fake_backend: FakeBackend, image: np.ndarray, logits: list[float]) -> None:
        fake_backend.logits = [logits]
        with pytest.raises(MalformedOutputError, match=r"\[1, 2\]"):
            _classifier(fake_backend).classify(image)

    def test_non_finite_logits_raise(self, fake_backend: FakeBackend, image: np.ndarray) -> None:
        fake_backend.logits = [[float("nan"), 0.0]]
        with pytest.raises(MalformedOutputError, match="non-finite"):
            _classifier(fake_backend).classify(image)

    def test_backend_error_propagates(self, fake_backend: FakeBackend, image: np.ndarray) -> None:
        fake_backend.failing_calls = {0}
        with pytest.raises(BackendExecutionError):
            _classifier(fake_backend).classify(image)

    def test_empty_image_raises(self, fake_backend: FakeBackend) -> None:
        with pytest.raises(InvalidDimensionError):
            _classifier(fake_backend).classify(np.zeros((0, 4, 3), dtype=np.uint8))
        assert fake_backend.calls == []
