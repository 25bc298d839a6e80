"""Model version store endpoints."""

import structlog
from fastapi import APIRouter, Depends, Query

from src.api.dependencies import get_container, get_version_store
from src.container import ServiceContainer
from src.domains.versioning.models import (
    BackupRequest,
    CreateVersionRequest,
    DeployVersionRequest,
    RollbackRequest,
)
from src.domains.versioning.store import ModelVersionStore
from src.shared.coordination import DEPLOYMENT

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/versions", tags=["versions"])


@router.get("")
async def list_versions_endpoint(store: ModelVersionStore = Depends(get_version_store)) -> dict:
    """Current version, all versions (newest first) and recent history."""
    return store.versions_info().model_dump(mode="json")


@router.post("", status_code=201)
async def create_version_endpoint(
    request: CreateVersionRequest,
    store: ModelVersionStore = Depends(get_version_store),
) -> dict:
    """Snapshot the active artifact as a new version."""
    return store.create_version(request).model_dump(mode="json")


@router.get("/statistics")
async def version_statistics_endpoint(
    store: ModelVersionStore = Depends(get_version_store),
) -> dict:
    return store.statistics().model_dump(mode="json")


@router.get("/backups")
async def list_backups_endpoint(store: ModelVersionStore = Depends(get_version_store)) -> dict:
    backups = store.list_backups()
    return {"backups": [b.model_dump(mode="json") for b in backups], "count": len(backups)}


@router.post("/backup", status_code=201)
async def create_backup_endpoint(
    request: BackupRequest | None = None,
    store: ModelVersionStore = Depends(get_version_store),
) -> dict:
    reason = request.reason if request else "manual"
    return store.create_backup(reason=reason).model_dump(mode="json")


@router.post("/rollback")
async def rollback_endpoint(
    request: RollbackRequest | None = None,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    reason = request.reason if request else "manual_rollback"
    with container.coordinator.exclusive(DEPLOYMENT, "api:rollback"):
        record = container.store.rollback_to_previous_version(reason)
    return record.model_dump(mode="json")


@router.delete("/cleanup")
async def cleanup_endpoint(
    keep_count: int | None = Query(None, ge=0),
    store: ModelVersionStore = Depends(get_version_store),
) -> dict:
    return store.cleanup_old_versions(keep_count).model_dump(mode="json")


@router.get("/{version}")
async def get_version_endpoint(
    version: str,
    store: ModelVersionStore = Depends(get_version_store),
) -> dict:
    return store.get_version(version).model_dump(mode="json")


@router.post("/{version}/deploy")
async def deploy_version_endpoint(
    version: str,
    request: DeployVersionRequest | None = None,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    options = request or DeployVersionRequest()
    with container.coordinator.exclusive(DEPLOYMENT, f"api:deploy:{version}"):
        record = container.store.deploy_version(
            version,
            create_backup=options.create_backup,
            strategy=options.strategy,
            rollback_on_failure=options.rollback_on_failure,
        )
    return record.model_dump(mode="json")
