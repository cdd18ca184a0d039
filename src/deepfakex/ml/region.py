"""Padded face crops.

The crop grows the detector box by ``extend_ratio`` of its size: 0.7x above,
1.0x below, and 0.7x on each side, so that chin and hairline are included.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from deepfakex.ml.face_detector import FaceBox

DEFAULT_EXTEND_RATIO = 0.5

_TOP_FACTOR = 0.7
_BOTTOM_FACTOR = 1.0
_SIDE_FACTOR = 0.7


@dataclass(frozen=True)
class CropRegion:
    """Integer pixel rectangle inside an image."""

    left: int
    top: int
    width: int
    height: int

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


def compute_crop_region(box: FaceBox, image_width: int, image_height: int, extend_ratio: float) -> CropRegion:
    """Expand ``box`` and clamp it to the image bounds."""
    face_w = box.x2 - box.x1
    face_h = box.y2 - box.y1

    new_y1 = max(0.0, box.y1 - face_h * extend_ratio * _TOP_FACTOR)
    new_y2 = min(float(image_height), box.y2 + face_h * extend_ratio * _BOTTOM_FACTOR)

    extend_w = face_w * extend_ratio * _SIDE_FACTOR
    new_x1 = max(0.0, box.x1 - extend_w)
    new_x2 = min(float(image_width), box.x2 + extend_w)

    return CropRegion(
        left=int(new_x1),
        top=int(new_y1),
        width=int(new_x2 - new_x1),
        height=int(new_y2 - new_y1),
    )


def expand(image: NDArray[np.uint8], box: FaceBox, extend_ratio: float = DEFAULT_EXTEND_RATIO) -> NDArray[np.uint8]:
    """Return a copy of the padded face region, or ``image`` itself if the region is empty."""
    height, width = image.shape[:2]
    region = compute_crop_region(box, width, height, extend_ratio)
    if region.is_empty:
        return image

    crop = image[region.top : region.top + region.height, region.left : region.left + region.width]
    if crop.shape[0] == 0 or crop.shape[1] == 0:
        return image
    return crop.copy()
