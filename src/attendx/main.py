"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from attendx.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from attendx.api.middleware import register_error_handlers
from attendx.api.routes import router
from attendx.config import Settings, get_settings
from attendx.ml.face_recognizer import OnnxFaceRecognizer
from attendx.ml.model_manager import OnnxModelManager
from attendx.service import AttendanceService, create_store
from attendx.workers import WorkerPool

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the service graph and attach it to ``app.state``."""
    app.state.settings = settings
    app.state.worker_pool = WorkerPool(settings)
    app.state.service = AttendanceService.from_settings(settings, create_store(settings))
    app.state.model_manager = OnnxModelManager(settings)
    app.state.extractor = OnnxFaceRecognizer(settings, app.state.model_manager)


def close_state(app: FastAPI) -> None:
    app.state.worker_pool.shutdown()
    app.state.model_manager.shutdown()
    app.state.service.close()


async def evict_idle_models(models: ModelManager, interval: float) -> None:
    """Drop idle recognition sessions every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        evicted = models.evict_idle()
        if evicted:
            logger.debug("Idle sweep evicted %s", evicted)


def start_eviction(app: FastAPI, settings: Settings) -> asyncio.Task[None] | None:
    """Schedule the idle sweep; none runs when ``model_ttl`` is 0."""
    if settings.model_ttl == 0:
        return None
    return asyncio.create_task(evict_idle_models(app.state.model_manager, settings.model_ttl))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting AttendX (recognition=%s, threshold=%.2f/%s, min_samples=%d, cooldown=%s)",
        settings.face_recognition_model,
        settings.match_threshold,
        settings.match_aggregation,
        settings.min_samples,
        settings.cooldown_mode,
    )
    init_state(app, settings)
    eviction = app.state.eviction_task = start_eviction(app, settings)

    logger.info("AttendX ready")
    yield

    logger.info("Shutting down AttendX")
    if eviction is not None:
        eviction.cancel()
        with suppress(asyncio.CancelledError):
            await eviction
    close_state(app)
    logger.info("AttendX shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="AttendX",
        description="Face enrollment, verification and idempotent attendance recording",
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

    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("attendx.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
