"""Exception hierarchy for the detection pipeline."""

from __future__ import annotations


class DeepfakeXError(Exception):
    """Base class for all DeepfakeX errors."""


class InvalidDimensionError(DeepfakeXError, ValueError):
    """Raised when a tensor or image is requested with a non-positive size."""


class BackendError(DeepfakeXError):
    """Base class for inference backend failures."""


class BackendUnavailableError(BackendError):
    """Raised when a model cannot be loaded or resolved."""


class BackendExecutionError(BackendError):
    """Raised when a loaded model fails while running."""


class MalformedOutputError(DeepfakeXError):
    """Raised when a model returns a tensor of unexpected shape or content."""


class ImageDecodeError(DeepfakeXError, ValueError):
    """Raised when an image source cannot be turned into pixels."""
