"""Pydantic request/response schemas for the DeepfakeX API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class BoundingBox(BaseModel):
    """Face box in original image pixel coordinates."""

    x1: float
    y1: float
    x2: float
    y2: float
    score: float = Field(description="Detector confidence (0.0-1.0)")


class DetectionItem(BaseModel):
    """Classification of one face, or of the whole image when face_index is -1."""

    face_index: int = Field(description="Index of the detected face, -1 for the whole image")
    label: Literal["Fake", "Real"]
    confidence: float = Field(ge=0.0, le=1.0)
    message: str
    box: BoundingBox | None = None
    crop_jpeg_base64: str | None = Field(default=None, description="JPEG of the classified region, if requested")


class AnalysisResponse(BaseModel):
    """Response for the analyze endpoints. An empty list means no usable result."""

    results: list[DetectionItem]


class AnalyzeUrlRequest(BaseModel):
    """Request body for analyzing a remote image."""

    url: str
    all_faces: bool = False
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    extend_ratio: float | None = Field(default=None, ge=0.0)
    include_crops: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'face_detection' or 'deepfake_classification'")
    status: str = Field(description="Model status: 'active' or 'available'")
    input_size: int
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
