"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from deepfakex.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepfakex.api.middleware import access_log
from deepfakex.api.routes import router
from deepfakex.config import get_settings
from deepfakex.ml.backend import OnnxInferenceBackend
from deepfakex.ml.inference import InferencePool
from deepfakex.ml.model_manager import OnnxModelManager
from deepfakex.ml.pipeline import DeepfakeDetector

logger = logging.getLogger(__name__)


async def evict_idle_models(model_manager: ModelManager, interval: float) -> None:
    """Unload sessions past their TTL every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            model_manager.unload_idle_models()
        except Exception:
            logger.exception("Idle model eviction failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load models on startup, release them on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting DeepfakeX (device=%s, max_concurrent=%s, detector=%s, classifier=%s)",
        settings.device,
        settings.max_concurrent,
        settings.detector_model,
        settings.classifier_model,
    )

    model_manager = OnnxModelManager(settings)
    backend = OnnxInferenceBackend(model_manager)
    face_executor = None
    if settings.face_workers > 1:
        face_executor = ThreadPoolExecutor(
            max_workers=settings.face_workers,
            thread_name_prefix="deepfakex-face",
        )

    app.state.model_manager = model_manager
    app.state.detector = DeepfakeDetector.from_settings(settings, backend, executor=face_executor)
    app.state.inference_pool = InferencePool(settings)

    eviction_task = None
    if settings.model_ttl > 0:
        eviction_task = asyncio.create_task(evict_idle_models(model_manager, settings.eviction_interval))
    app.state.eviction_task = eviction_task

    logger.info("DeepfakeX ready")
    yield

    logger.info("Shutting down DeepfakeX")
    if eviction_task is not None:
        eviction_task.cancel()
        with suppress(asyncio.CancelledError):
            await eviction_task
    app.state.inference_pool.shutdown()
    app.state.detector.close()
    if face_executor is not None:
        face_executor.shutdown(wait=True)
    model_manager.shutdown()
    logger.info("DeepfakeX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="DeepfakeX",
        description="Face detection and real/fake classification API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(access_log)

    application.include_router(router)
    return application


app = create_app()
