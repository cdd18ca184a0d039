"""Tests for image to tensor conversion."""

from __future__ import annotations

import numpy as np
import pytest

from deepfakex.errors import InvalidDimensionError
from deepfakex.ml.tensors import IMAGENET_NORMALIZATION, MeanStd, Scale01, build_tensor, ensure_rgb


def _solid(width: int, height: int, rgb: tuple[int, int, int]) -> np.ndarray:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :] = rgb
    return image


class TestBuildTensor:
    @pytest.mark.parametrize(("width", "height", "size"), [(1, 1, 4), (37, 91, 128), (1280, 720, 640)])
    def test_shape_and_dtype(self, width: int, height: int, size: int) -> None:
        rng = np.random.default_rng(0)
        image = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)

        tensor = build_tensor(image, size, Scale01())

        assert tensor.shape == (1, 3, size, size)
        assert tensor.dtype == np.float32
        assert tensor.flags["C_CONTIGUOUS"]
        assert np.all(np.isfinite(tensor))

    def test_scale01_range(self) -> None:
        tensor = build_tensor(_solid(10, 10, (255, 0, 51)), 8, Scale01())
        assert np.allclose(tensor[0, 0], 1.0)
        assert np.allclose(tensor[0, 1], 0.0)
        assert np.allclose(tensor[0, 2], 0.2)

    def test_channels_are_planar_rgb(self) -> None:
        image = _solid(4, 4, (0, 0, 0))
        image[0, 1] = (255, 0, 0)

        tensor = build_tensor(image, 4, Scale01())

        assert tensor[0, 0, 0, 1] == pytest.approx(1.0)
        assert tensor[0, 1, 0, 1] == pytest.approx(0.0)
        assert tensor[0, 2, 0, 1] == pytest.approx(0.0)
        assert tensor[0, 0, 0, 0] == pytest.approx(0.0)

    def test_mean_std_normalization(self) -> None:
        tensor = build_tensor(_solid(16, 16, (255, 255, 255)), 8, IMAGENET_NORMALIZATION)

        for channel, (mean, std) in enumerate(zip((0.485, 0.456, 0.406), (0.229, 0.224, 0.225), strict=True)):
            assert np.allclose(tensor[0, channel], (1.0 - mean) / std, atol=1e-5)

    @pytest.mark.parametrize("size", [0, -1, -640])
    def test_non_positive_size_raises(self, size: int) -> None:
        with pytest.raises(InvalidDimensionError):
            build_tensor(_solid(4, 4, (1, 2, 3)), size, Scale01())

    def test_empty_image_raises(self) -> None:
        with pytest.raises(InvalidDimensionError):
            build_tensor(np.zeros((0, 5, 3), dtype=np.uint8), 4, Scale01())

    def test_deterministic(self) -> None:
        rng = np.random.default_rng(7)
        image = rng.integers(0, 256, size=(50, 70, 3), dtype=np.uint8)
        first = build_tensor(image, 32, IMAGENET_NORMALIZATION)
        second = build_tensor(image, 32, IMAGENET_NORMALIZATION)
        assert np.array_equal(first, second)


class TestEnsureRgb:
    def test_grayscale_expanded(self) -> None:
        gray = np.full((3, 5), 42, dtype=np.uint8)
        rgb = ensure_rgb(gray)
        assert rgb.shape == (3, 5, 3)
        assert np.all(rgb == 42)

    def test_alpha_dropped(self) -> None:
        rgba = np.zeros((2, 2, 4), dtype=np.uint8)
        rgba[..., 3] = 255
        assert ensure_rgb(rgba).shape == (2, 2, 3)

    def test_unsupported_shape(self) -> None:
        with pytest.raises(InvalidDimensionError):
            ensure_rgb(np.zeros((2, 2, 2), dtype=np.uint8))


class TestMeanStd:
    def test_zero_std_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-zero"):
            MeanStd(mean=(0.5, 0.5, 0.5), std=(0.5, 0.0, 0.5))
