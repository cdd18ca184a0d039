"""Face detection with a YOLO-style ONNX face model.

The detector emits rows of ``(x1, y1, x2, y2, score, class_id)`` in the
coordinate space of its square input. Rows are rescaled to the original
image, filtered by score, and optionally de-duplicated with greedy IoU NMS.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from deepfakex.errors import MalformedOutputError
from deepfakex.ml.tensors import Scale01, build_tensor

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from deepfakex.ml.backend import InferenceBackend, ModelHandle

logger = logging.getLogger(__name__)

DETECTOR_INPUT_NAME = "images"
DEFAULT_DETECTOR_INPUT_SIZE = 640
DEFAULT_NMS_IOU_THRESHOLD = 0.45

_ROW_WIDTH = 6


@dataclass(frozen=True)
class FaceBox:
    """A face bounding box in original image pixel coordinates."""

    x1: float
    y1: float
    x2: float
    y2: float
    score: float
    class_id: float = 0.0

    def __post_init__(self) -> None:
        coords = (self.x1, self.y1, self.x2, self.y2, self.score)
        if not all(math.isfinite(v) for v in coords):
            raise ValueError(f"FaceBox values must be finite: {coords}")
        if self.x2 < self.x1 or self.y2 < self.y1:
            raise ValueError(f"FaceBox corners are inverted: ({self.x1}, {self.y1}, {self.x2}, {self.y2})")

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return self.width * self.height


def non_max_suppression(boxes: Sequence[FaceBox], iou_threshold: float) -> list[FaceBox]:
    """Greedy IoU suppression.

    Boxes are visited by descending score; a box is dropped when its IoU with
    an already kept box exceeds ``iou_threshold``. Survivors are returned in
    their original order.
    """
    if len(boxes) < 2:
        return list(boxes)

    coords = np.array([[b.x1, b.y1, b.x2, b.y2] for b in boxes], dtype=np.float64)
    scores = np.array([b.score for b in boxes], dtype=np.float64)
    x1, y1, x2, y2 = coords[:, 0], coords[:, 1], coords[:, 2], coords[:, 3]
    areas = (x2 - x1) * (y2 - y1)

    # Stable sort so equal scores keep backend order.
    order = np.argsort(-scores, kind="stable")
    keep: list[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        rest = order[1:]

        w = np.maximum(0.0, np.minimum(x2[i], x2[rest]) - np.maximum(x1[i], x1[rest]))
        h = np.maximum(0.0, np.minimum(y2[i], y2[rest]) - np.maximum(y1[i], y1[rest]))
        inter = w * h
        union = areas[i] + areas[rest] - inter
        overlap = np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)

        order = rest[overlap <= iou_threshold]

    return [boxes[i] for i in sorted(keep)]


class FaceDetector:
    """Locates faces and maps them back to the caller's image space."""

    def __init__(
        self,
        backend: InferenceBackend,
        handle: ModelHandle,
        input_size: int = DEFAULT_DETECTOR_INPUT_SIZE,
        nms_iou_threshold: float | None = DEFAULT_NMS_IOU_THRESHOLD,
    ) -> None:
        self._backend = backend
        self._handle = handle
        self._input_size = input_size
        self._nms_iou_threshold = nms_iou_threshold

    @property
    def model_name(self) -> str:
        return self._handle.model_id

    def close(self) -> None:
        self._backend.release(self._handle)

    def detect_faces(self, image: NDArray[np.uint8], confidence_threshold: float) -> list[FaceBox]:
        """Detect faces scoring at least ``confidence_threshold``.

        Never raises: any failure is logged and reported as "no faces".
        """
        try:
            rows = self._run(image)
            boxes = self._decode(rows, image.shape[1], image.shape[0], confidence_threshold)
        except Exception:
            logger.exception("Face detection failed; treating image as faceless")
            return []

        if self._nms_iou_threshold is not None:
            before = len(boxes)
            boxes = non_max_suppression(boxes, self._nms_iou_threshold)
            if len(boxes) != before:
                logger.debug("NMS reduced %d boxes to %d", before, len(boxes))
        return boxes

    def _run(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        tensor = build_tensor(image, self._input_size, Scale01())
        outputs = self._backend.run(self._handle, DETECTOR_INPUT_NAME, tensor)
        if not outputs:
            raise MalformedOutputError("Detector returned no outputs")

        raw = np.asarray(next(iter(outputs.values())), dtype=np.float32)
        if raw.ndim != 3 or raw.shape[0] != 1 or raw.shape[2] < _ROW_WIDTH:
            raise MalformedOutputError(f"Detector output must have shape [1, N, 6], got {list(raw.shape)}")
        return raw[0]

    def _decode(
        self,
        rows: NDArray[np.float32],
        image_width: int,
        image_height: int,
        confidence_threshold: float,
    ) -> list[FaceBox]:
        scale_x = image_width / self._input_size
        scale_y = image_height / self._input_size

        boxes: list[FaceBox] = []
        for row in rows:
            score = float(row[4])
            if score < confidence_threshold:
                continue
            try:
                box = FaceBox(
                    x1=float(row[0]) * scale_x,
                    y1=float(row[1]) * scale_y,
                    x2=float(row[2]) * scale_x,
                    y2=float(row[3]) * scale_y,
                    score=score,
                    class_id=float(row[5]),
                )
            except ValueError as exc:
                logger.debug("Dropping malformed detection row: %s", exc)
                continue
            boxes.append(box)
        return boxes
