"""Winner selection and deployment endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Query

from src.api.dependencies import get_winner_selection
from src.domains.deployment.models import ManualDeployRequest
from src.domains.deployment.winner_selection import WinnerSelectionService

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/winner-selection", tags=["winner-selection"])


@router.get("/deployment-history")
async def deployment_history_endpoint(
    limit: int | None = Query(None, ge=1),
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    records = service.deployment_history(limit)
    return {"deployments": [r.model_dump(mode="json") for r in records], "count": len(records)}


@router.get("/stats")
async def deployment_stats_endpoint(
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    return service.deployment_stats().model_dump(mode="json")


@router.get("/config")
async def get_config_endpoint(
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    return service.config.to_dict()


@router.put("/config")
async def update_config_endpoint(
    updates: dict[str, Any] = Body(...),
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    return service.update_config(updates).to_dict()


@router.get("/{experiment_id}/evaluate")
async def evaluate_endpoint(
    experiment_id: str,
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    return service.evaluate(experiment_id).model_dump(mode="json")


@router.post("/{experiment_id}/auto-deploy")
async def auto_deploy_endpoint(
    experiment_id: str,
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    outcome = await service.auto_deploy_winner(experiment_id)
    return outcome.model_dump(mode="json")


@router.post("/{experiment_id}/manual-deploy")
async def manual_deploy_endpoint(
    experiment_id: str,
    request: ManualDeployRequest | None = None,
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    force = request.force_override if request else False
    outcome = await service.manual_deploy_winner(experiment_id, force_override=force)
    return outcome.model_dump(mode="json")


@router.post("/{experiment_id}/promote-canary")
async def promote_canary_endpoint(
    experiment_id: str,
    service: WinnerSelectionService = Depends(get_winner_selection),
) -> dict:
    promotion = await service.promote_canary(experiment_id)
    return promotion.model_dump(mode="json")
