"""API routes for A/B experiments between classifier variants."""

import structlog
from fastapi import APIRouter, Depends, Query, Response

from src.api.dependencies import get_orchestrator
from src.domains.experiments.models import (
    AssignRequest,
    CreateExperimentRequest,
    ExperimentStatus,
    RecordOutcomeRequest,
)
from src.domains.experiments.orchestrator import ExperimentOrchestrator

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/experiments", tags=["experiments"])


@router.post("", status_code=201)
async def create_experiment_endpoint(
    request: CreateExperimentRequest,
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Create and start a new experiment."""
    experiment = orchestrator.create_experiment(request)
    return {"experiment_id": experiment.id, "experiment": experiment.model_dump(mode="json")}


@router.get("")
async def list_experiments_endpoint(
    status: ExperimentStatus | None = Query(None),
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """List experiments, optionally filtered by status."""
    experiments = orchestrator.list_experiments(status)
    return {
        "experiments": [e.model_dump(mode="json") for e in experiments],
        "count": len(experiments),
    }


@router.get("/{experiment_id}")
async def get_experiment_endpoint(
    experiment_id: str,
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Experiment with its current (or cached) significance results."""
    return orchestrator.get_results(experiment_id).model_dump(mode="json")


@router.post("/{experiment_id}/stop")
async def stop_experiment_endpoint(
    experiment_id: str,
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> dict:
    experiment = orchestrator.stop_experiment(experiment_id)
    return experiment.model_dump(mode="json")


@router.delete("/{experiment_id}", status_code=204)
async def delete_experiment_endpoint(
    experiment_id: str,
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> Response:
    orchestrator.delete_experiment(experiment_id)
    return Response(status_code=204)


@router.post("/{experiment_id}/assign")
async def assign_endpoint(
    experiment_id: str,
    request: AssignRequest,
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Assign a user to a group. ``group`` is null when the experiment is not running."""
    group = orchestrator.assign_user_to_group(request.user_id, experiment_id, request.context)
    return {"experiment_id": experiment_id, "user_id": request.user_id, "group": group}


@router.post("/{experiment_id}/outcomes")
async def record_outcome_endpoint(
    experiment_id: str,
    request: RecordOutcomeRequest,
    orchestrator: ExperimentOrchestrator = Depends(get_orchestrator),
) -> dict:
    experiment = orchestrator.record_outcome(
        experiment_id,
        request.group,
        request.predicted_label,
        request.actual_label,
        request.confidence,
    )
    return {
        "experiment_id": experiment_id,
        "status": experiment.status,
        "total_predictions": experiment.metrics.total_predictions,
        "concluded": experiment.status == ExperimentStatus.COMPLETED,
    }
