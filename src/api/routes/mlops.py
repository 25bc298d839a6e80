"""Retraining monitor and scheduler endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Query

from src.api.dependencies import get_container, get_scheduler
from src.container import ServiceContainer
from src.domains.retraining.models import (
    RetrainRequest,
    SchedulerControlRequest,
    ValidationRequest,
)
from src.domains.retraining.scheduler import RetrainingScheduler

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/mlops", tags=["mlops"])


@router.get("/triggers")
async def triggers_endpoint(
    limit: int | None = Query(None, ge=1),
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Evaluate triggers now and return them with the recent history."""
    evaluation = container.monitor.evaluate_triggers()
    history = container.monitor.history(limit)
    return {
        "evaluation": evaluation.model_dump(mode="json"),
        "history": [t.model_dump(mode="json") for t in history],
    }


@router.get("/scheduler/status")
async def scheduler_status_endpoint(
    scheduler: RetrainingScheduler = Depends(get_scheduler),
) -> dict:
    return scheduler.status().model_dump(mode="json")


@router.post("/scheduler/control")
async def scheduler_control_endpoint(
    request: SchedulerControlRequest,
    scheduler: RetrainingScheduler = Depends(get_scheduler),
) -> dict:
    if request.action == "start":
        changed = scheduler.start()
    else:
        changed = await scheduler.stop()
    return {"action": request.action, "changed": changed, "is_running": scheduler.is_running}


@router.put("/scheduler/config")
async def scheduler_config_endpoint(
    updates: dict[str, Any] = Body(...),
    scheduler: RetrainingScheduler = Depends(get_scheduler),
) -> dict:
    return scheduler.update_config(updates).to_dict()


@router.post("/retrain")
async def retrain_endpoint(
    request: RetrainRequest | None = None,
    scheduler: RetrainingScheduler = Depends(get_scheduler),
) -> dict:
    """Run a manual retraining. Returns 409 if one is already in progress."""
    request = request or RetrainRequest()
    outcome = await scheduler.trigger_manual_retraining(request.options, request.reason)
    return outcome.model_dump(mode="json")


@router.get("/statistics")
async def statistics_endpoint(
    container: ServiceContainer = Depends(get_container),
) -> dict:
    metrics = container.validation_metrics.snapshot()
    return {
        "scheduler": container.scheduler.statistics().model_dump(mode="json"),
        "validation": {
            **metrics.model_dump(mode="json"),
            "accuracy_rate": round(metrics.accuracy_rate, 2),
        },
        "versions": container.store.statistics().model_dump(mode="json"),
    }


@router.post("/validations")
async def record_validation_endpoint(
    request: ValidationRequest,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    metrics = container.validation_metrics.record_validation(
        request.predicted_class, request.is_correct, request.confidence
    )
    return {
        "total_validations": metrics.total_validations,
        "accuracy_rate": round(metrics.accuracy_rate, 2),
    }
