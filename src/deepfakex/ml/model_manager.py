"""Model manager: resolve, load, cache, and evict ONNX models.

Model files are looked up in ``models_dir`` first. When one is missing it is
fetched from the Hugging Face repo named by ``model_repo_id``; with no repo
configured, both files must already be in ``models_dir``. Sessions are cached
per model name and evicted after ``model_ttl`` seconds of inactivity.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from deepfakex.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Ensure a model file is present locally and return its path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload(self, model_name: str) -> bool:
        """Drop the cached session for one model."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    DEEPFAKE_CLASSIFICATION = "deepfake_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    filename: str
    subfolder: str | None
    task: ModelTask
    input_name: str
    input_size: int
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "yolov11n_face": ModelSpec(
        name="yolov11n_face",
        filename="yolov11n-face.onnx",
        subfolder=None,
        task=ModelTask.FACE_DETECTION,
        input_name="images",
        input_size=640,
        license="AGPL-3.0",
    ),
    "deepfake_binary_s128": ModelSpec(
        name="deepfake_binary_s128",
        filename="deepfake_binary_s128_e5_early.onnx",
        subfolder=None,
        task=ModelTask.DEEPFAKE_CLASSIFICATION,
        input_name="input",
        input_size=128,
        license="Apache-2.0",
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry, raising KeyError with a readable message."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Resolves, loads, caches, and evicts ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return a local model path, downloading from the Hub only when missing.

        Raises:
            FileNotFoundError: If the file is not in ``models_dir`` and no
                ``model_repo_id`` is configured.
        """
        spec = get_model_spec(model_name)

        known = self._model_paths.get(model_name)
        if known is not None and known.exists():
            return known

        local = self._local_path(spec)
        if local.exists():
            logger.info("Using local model file for %s: %s", model_name, local)
            self._model_paths[model_name] = local
            return local

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise FileNotFoundError(
                f"Model file for {model_name} not found at {local}; place {spec.filename} in "
                "models_dir or set DEEPFAKEX_MODEL_REPO_ID"
            )

        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=spec.filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload(self, model_name: str) -> bool:
        """Drop the cached session for ``model_name``. Returns True if one existed."""
        with self._lock:
            removed = self._sessions.pop(model_name, None)
        if removed is not None:
            logger.info("Released session for %s", model_name)
        return removed is not None

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _local_path(self, spec: ModelSpec) -> Path:
        if spec.subfolder:
            return self._models_dir / spec.subfolder / spec.filename
        return self._models_dir / spec.filename

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
