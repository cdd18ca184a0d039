"""Image to model-input tensor conversion.

Both models consume a single RGB image as a float32 ``[1, 3, S, S]`` tensor.
They differ only in how pixel values are normalized, which is described by a
:data:`Normalization` value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import cv2
import numpy as np

from deepfakex.errors import InvalidDimensionError

if TYPE_CHECKING:
    from numpy.typing import NDArray


@dataclass(frozen=True)
class Scale01:
    """Divide each 8-bit channel by 255."""


@dataclass(frozen=True)
class MeanStd:
    """Scale to [0, 1], then subtract a per-channel mean and divide by a per-channel std."""

    mean: tuple[float, float, float]
    std: tuple[float, float, float]

    def __post_init__(self) -> None:
        if len(self.mean) != 3 or len(self.std) != 3:
            raise ValueError("mean and std must have exactly three channels")
        if any(s == 0 for s in self.std):
            raise ValueError("std must be non-zero for every channel")


Normalization = Scale01 | MeanStd

IMAGENET_NORMALIZATION = MeanStd(mean=(0.485, 0.456, 0.406), std=(0.229, 0.224, 0.225))


def ensure_rgb(image: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Return an HxWx3 view of ``image``, expanding grayscale and dropping alpha."""
    if image.ndim == 2:
        return np.stack([image, image, image], axis=-1)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    if image.ndim == 3 and image.shape[2] == 4:
        return image[:, :, :3]
    raise InvalidDimensionError(f"Unsupported image shape {image.shape}")


def build_tensor(
    image: NDArray[np.uint8],
    target_size: int,
    normalization: Normalization,
) -> NDArray[np.float32]:
    """Resize ``image`` to ``target_size`` x ``target_size`` and pack it channel-first.

    Args:
        image: HxWx3 RGB uint8 array (grayscale and RGBA are converted).
        target_size: Square edge length expected by the model.
        normalization: :class:`Scale01` or :class:`MeanStd`.

    Returns:
        C-contiguous float32 array of shape ``(1, 3, target_size, target_size)``
        with planar R, G, B channels.

    Raises:
        InvalidDimensionError: If ``target_size`` is not positive or the image is empty.
    """
    if target_size <= 0:
        raise InvalidDimensionError(f"target_size must be positive, got {target_size}")

    rgb = ensure_rgb(image)
    height, width = rgb.shape[:2]
    if height < 1 or width < 1:
        raise InvalidDimensionError(f"Image must be at least 1x1, got {width}x{height}")

    if (height, width) != (target_size, target_size):
        rgb = cv2.resize(
            np.ascontiguousarray(rgb),
            (target_size, target_size),
            interpolation=cv2.INTER_LINEAR,
        )

    values = rgb.astype(np.float32) / 255.0
    if isinstance(normalization, MeanStd):
        mean = np.asarray(normalization.mean, dtype=np.float32)
        std = np.asarray(normalization.std, dtype=np.float32)
        values = (values - mean) / std

    chw = values.transpose(2, 0, 1)
    return np.ascontiguousarray(chw[np.newaxis, ...], dtype=np.float32)
