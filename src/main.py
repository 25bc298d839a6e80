"""FastAPI application entry point for the model lifecycle service."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.middleware.error_handler import (
    global_exception_handler,
    lifecycle_exception_handler,
)
from src.api.middleware.logging import StructuredLoggingMiddleware
from src.api.routes.experiments import router as experiments_router
from src.api.routes.health import router as health_router
from src.api.routes.mlops import router as mlops_router
from src.api.routes.versions import router as versions_router
from src.api.routes.winner_selection import router as winner_selection_router
from src.config import settings
from src.container import build_container
from src.shared.errors import LifecycleError
from src.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build services, start the scheduler, stop it on exit."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level, settings.json_logs)

    logger.info(
        "model_lifecycle_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        storage_dir=settings.storage_dir,
    )

    container = getattr(app.state, "container", None) or build_container(settings)
    app.state.container = container

    if settings.scheduler_autostart:
        container.scheduler.start()

    yield

    await container.scheduler.stop()
    logger.info("model_lifecycle_shutting_down")


app = FastAPI(
    title="Model Lifecycle",
    description="A/B testing, winner deployment, versioning and retraining for the image classifier",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# Exception handlers
app.add_exception_handler(LifecycleError, lifecycle_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Register routers
app.include_router(health_router)
app.include_router(experiments_router)
app.include_router(winner_selection_router)
app.include_router(versions_router)
app.include_router(mlops_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
