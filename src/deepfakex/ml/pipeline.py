"""Detection orchestrator: detect faces, crop, classify, aggregate.

Failure policy:
    * Detection failures degrade to "no faces" inside :class:`FaceDetector`.
    * A face whose classification fails is logged and dropped.
    * If every face fails, the result is empty; the orchestrator does not fall
      back to whole-image classification once faces were found.
    * If the whole-image fallback fails, the result is empty.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from deepfakex.ml import region
from deepfakex.ml.classifier import DeepfakeClassifier, Label
from deepfakex.ml.face_detector import FaceDetector

if TYPE_CHECKING:
    import threading
    from concurrent.futures import Executor, Future

    import numpy as np
    from numpy.typing import NDArray

    from deepfakex.config import Settings
    from deepfakex.ml.backend import InferenceBackend
    from deepfakex.ml.face_detector import FaceBox

logger = logging.getLogger(__name__)

WHOLE_IMAGE_INDEX = -1


@dataclass(frozen=True, eq=False)
class DetectionResult:
    """Classification of one face crop, or of the whole image when ``face_index == -1``."""

    face_index: int
    label: Label
    confidence: float
    cropped_image: NDArray[np.uint8]
    box: FaceBox | None = None

    @property
    def is_whole_image(self) -> bool:
        return self.face_index == WHOLE_IMAGE_INDEX

    @property
    def message(self) -> str:
        subject = "No face detected" if self.is_whole_image else f"Face {self.face_index + 1}"
        return f"{subject} → {self.label} ({self.confidence * 100:.2f}%)"


class DeepfakeDetector:
    """Runs the face detector and the classifier as one pipeline."""

    def __init__(
        self,
        face_detector: FaceDetector,
        classifier: DeepfakeClassifier,
        confidence_threshold: float = 0.8,
        extend_ratio: float = region.DEFAULT_EXTEND_RATIO,
        executor: Executor | None = None,
    ) -> None:
        self._face_detector = face_detector
        self._classifier = classifier
        self._confidence_threshold = confidence_threshold
        self._extend_ratio = extend_ratio
        self._executor = executor

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: InferenceBackend,
        executor: Executor | None = None,
    ) -> DeepfakeDetector:
        """Load both models through ``backend`` and wire up a detector."""
        detector_handle = backend.load(settings.detector_model)
        classifier_handle = backend.load(settings.classifier_model)
        return cls(
            face_detector=FaceDetector(
                backend,
                detector_handle,
                input_size=settings.detector_input_size,
                nms_iou_threshold=settings.nms_iou_threshold,
            ),
            classifier=DeepfakeClassifier(
                backend,
                classifier_handle,
                input_size=settings.classifier_input_size,
            ),
            confidence_threshold=settings.confidence_threshold,
            extend_ratio=settings.extend_ratio,
            executor=executor,
        )

    @property
    def model_names(self) -> list[str]:
        return [self._face_detector.model_name, self._classifier.model_name]

    def close(self) -> None:
        """Release both models from their backend."""
        self._face_detector.close()
        self._classifier.close()

    def analyze_all(
        self,
        image: NDArray[np.uint8],
        confidence_threshold: float | None = None,
        extend_ratio: float | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[DetectionResult]:
        """Classify every detected face, or the whole image when none are found.

        Results are ordered by ``face_index``. If ``cancel_event`` is set while
        faces are being processed, no further faces are started and the
        results completed so far are returned.
        """
        threshold = self._confidence_threshold if confidence_threshold is None else confidence_threshold
        ratio = self._extend_ratio if extend_ratio is None else extend_ratio

        boxes = self._face_detector.detect_faces(image, threshold)
        if not boxes:
            return self._classify_whole_image(image)

        logger.debug("Detected %d face(s)", len(boxes))
        if self._executor is None:
            results = self._classify_sequential(image, boxes, ratio, cancel_event)
        else:
            results = self._classify_parallel(self._executor, image, boxes, ratio, cancel_event)

        if len(results) < len(boxes):
            logger.warning("Classified %d of %d detected faces", len(results), len(boxes))
        return sorted(results, key=lambda r: r.face_index)

    def analyze_best(
        self,
        image: NDArray[np.uint8],
        confidence_threshold: float | None = None,
        extend_ratio: float | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> DetectionResult | None:
        """Return the most confident result of :meth:`analyze_all`, or None if it is empty.

        Ties go to the earliest face.
        """
        results = self.analyze_all(image, confidence_threshold, extend_ratio, cancel_event=cancel_event)
        best: DetectionResult | None = None
        for result in results:
            if best is None or result.confidence > best.confidence:
                best = result
        return best

    # -- Internal -----------------------------------------------------------

    def _classify_whole_image(self, image: NDArray[np.uint8]) -> list[DetectionResult]:
        try:
            outcome = self._classifier.classify(image)
        except Exception:
            logger.exception("Whole-image classification failed")
            return []
        return [
            DetectionResult(
                face_index=WHOLE_IMAGE_INDEX,
                label=outcome.label,
                confidence=outcome.confidence,
                cropped_image=image,
            )
        ]

    def _classify_face(
        self,
        image: NDArray[np.uint8],
        index: int,
        box: FaceBox,
        extend_ratio: float,
    ) -> DetectionResult:
        cropped = region.expand(image, box, extend_ratio)
        outcome = self._classifier.classify(cropped)
        return DetectionResult(
            face_index=index,
            label=outcome.label,
            confidence=outcome.confidence,
            cropped_image=cropped,
            box=box,
        )

    def _classify_sequential(
        self,
        image: NDArray[np.uint8],
        boxes: list[FaceBox],
        extend_ratio: float,
        cancel_event: threading.Event | None,
    ) -> list[DetectionResult]:
        results: list[DetectionResult] = []
        for index, box in enumerate(boxes):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Analysis cancelled after %d of %d faces", index, len(boxes))
                break
            try:
                results.append(self._classify_face(image, index, box, extend_ratio))
            except Exception:
                logger.exception("Classification failed for face %d; dropping it", index)
        return results

    def _classify_parallel(
        self,
        executor: Executor,
        image: NDArray[np.uint8],
        boxes: list[FaceBox],
        extend_ratio: float,
        cancel_event: threading.Event | None,
    ) -> list[DetectionResult]:
        futures: list[tuple[int, Future[DetectionResult]]] = []
        for index, box in enumerate(boxes):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Analysis cancelled after submitting %d of %d faces", index, len(boxes))
                break
            futures.append((index, executor.submit(self._classify_face, image, index, box, extend_ratio)))

        results: list[DetectionResult] = []
        for index, future in futures:
            if cancel_event is not None and cancel_event.is_set() and future.cancel():
                continue
            try:
                results.append(future.result())
            except Exception:
                logger.exception("Classification failed for face %d; dropping it", index)
        return results
