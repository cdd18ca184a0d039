"""API route definitions."""

from __future__ import annotations

import base64
import logging
import threading
from typing import TYPE_CHECKING, Annotated

import cv2
from fastapi import APIRouter, Depends, Query, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from deepfakex.api.middleware import verify_api_key
from deepfakex.api.schemas import (
    AnalysisResponse,
    AnalyzeUrlRequest,
    BoundingBox,
    DetectionItem,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from deepfakex.errors import ImageDecodeError
from deepfakex.ml.imaging import BytesSource, RemoteUrlSource, load_image
from deepfakex.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from deepfakex.config import Settings
    from deepfakex.ml.inference import InferencePool
    from deepfakex.ml.model_manager import ModelManager
    from deepfakex.ml.pipeline import DeepfakeDetector, DetectionResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ANALYZE_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_detector(request: Request) -> DeepfakeDetector:
    detector: DeepfakeDetector = request.app.state.detector
    return detector


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _encode_crop(image: NDArray[np.uint8]) -> str | None:
    ok, encoded = cv2.imencode(".jpg", cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
    if not ok:
        logger.warning("Could not encode crop of shape %s", image.shape)
        return None
    return base64.b64encode(encoded.tobytes()).decode("ascii")


def _to_item(result: DetectionResult, include_crops: bool) -> DetectionItem:
    box = None
    if result.box is not None:
        box = BoundingBox(
            x1=result.box.x1,
            y1=result.box.y1,
            x2=result.box.x2,
            y2=result.box.y2,
            score=result.box.score,
        )
    return DetectionItem(
        face_index=result.face_index,
        label=result.label.value,
        confidence=result.confidence,
        message=result.message,
        box=box,
        crop_jpeg_base64=_encode_crop(result.cropped_image) if include_crops else None,
    )


def _analyze(
    detector: DeepfakeDetector,
    image: NDArray[np.uint8],
    all_faces: bool,
    confidence_threshold: float | None,
    extend_ratio: float | None,
    *,
    cancel_event: threading.Event,
) -> list[DetectionResult]:
    if all_faces:
        return detector.analyze_all(image, confidence_threshold, extend_ratio, cancel_event=cancel_event)
    best = detector.analyze_best(image, confidence_threshold, extend_ratio, cancel_event=cancel_event)
    return [] if best is None else [best]


async def _run_analysis(
    request: Request,
    image: NDArray[np.uint8],
    all_faces: bool,
    confidence_threshold: float | None,
    extend_ratio: float | None,
    include_crops: bool,
) -> AnalysisResponse | JSONResponse:
    pool = _get_inference_pool(request)
    detector = _get_detector(request)
    try:
        results = await pool.run(_analyze, detector, image, all_faces, confidence_threshold, extend_ratio)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, retry later")

    return AnalysisResponse(results=[_to_item(r, include_crops) for r in results])


@router.post(
    "/analyze",
    response_model=AnalysisResponse,
    responses=_ANALYZE_RESPONSES,
    summary="Analyze an uploaded image for manipulated faces",
)
async def analyze(
    request: Request,
    file: UploadFile,
    all_faces: bool = False,
    confidence_threshold: Annotated[float | None, Query(ge=0.0, le=1.0)] = None,
    extend_ratio: Annotated[float | None, Query(ge=0.0)] = None,
    include_crops: bool = False,
) -> AnalysisResponse | JSONResponse:
    """Detect faces, classify each as Fake or Real, and return the best or all results."""
    settings = _get_settings(request)
    # Reject from the declared size before pulling the upload into memory.
    if file.size is not None and file.size > settings.max_file_size:
        return _error(status.HTTP_413_CONTENT_TOO_LARGE, "Uploaded file is too large")
    data = await file.read()
    if len(data) > settings.max_file_size:
        return _error(status.HTTP_413_CONTENT_TOO_LARGE, "Uploaded file is too large")

    try:
        image = load_image(BytesSource(data), settings)
    except ImageDecodeError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    return await _run_analysis(request, image, all_faces, confidence_threshold, extend_ratio, include_crops)


@router.post(
    "/analyze-url",
    response_model=AnalysisResponse,
    responses=_ANALYZE_RESPONSES,
    summary="Analyze a remote image for manipulated faces",
)
async def analyze_url(request: Request, body: AnalyzeUrlRequest) -> AnalysisResponse | JSONResponse:
    """Fetch an image by URL, then analyze it like an upload."""
    settings = _get_settings(request)
    try:
        image = await run_in_threadpool(load_image, RemoteUrlSource(body.url), settings)
    except ImageDecodeError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    return await _run_analysis(
        request,
        image,
        body.all_faces,
        body.confidence_threshold,
        body.extend_ratio,
        body.include_crops,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered models and whether the current configuration uses them."""
    settings = _get_settings(request)
    active_models = {settings.detector_model, settings.classifier_model}

    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task.value,
                status="active" if spec.name in active_models else "available",
                input_size=spec.input_size,
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
