"""Health and readiness endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from src.api.dependencies import get_container
from src.config import settings
from src.container import ServiceContainer

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from src.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready(container: ServiceContainer = Depends(get_container)) -> JSONResponse:
    store_ok = container.store.models_dir.is_dir()
    scheduler_ok = container.scheduler.is_running or not settings.scheduler_autostart

    all_ready = store_ok and scheduler_ok
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "model_store": store_ok,
            "scheduler": scheduler_ok,
            "current_version": container.store.current_version,
            "deployment_in_progress": container.coordinator.deployment_in_progress,
            "retraining_in_progress": container.coordinator.retraining_in_progress,
        },
    )
