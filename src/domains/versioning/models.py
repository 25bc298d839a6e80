"""Pydantic models for the semantic version store."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

SCHEMA_VERSION = "1.0"
INITIAL_VERSION = "1.0.0"


class ChangeType(StrEnum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class VersionStatus(StrEnum):
    CREATED = "created"
    DEPLOYED = "deployed"
    ARCHIVED = "archived"


class StrategyName(StrEnum):
    REPLACE = "replace"
    CANARY = "canary"
    BLUE_GREEN = "blue-green"


class TriggeredBy(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"


class VersionPerformance(BaseModel):
    accuracy: float | None = None
    loss: float | None = None
    improvement: float | None = None


class ModelVersion(BaseModel):
    version: str
    created_at: datetime
    description: str = ""
    change_type: ChangeType = ChangeType.PATCH
    status: VersionStatus = VersionStatus.CREATED
    parent_version: str | None = None
    performance: VersionPerformance = Field(default_factory=VersionPerformance)
    size_bytes: int = 0
    files: int = 0
    deployed_at: datetime | None = None
    retraining_reason: str | None = None
    training_metrics: dict[str, Any] = Field(default_factory=dict)


class DeploymentRecord(BaseModel):
    id: str
    version: str
    previous_version: str | None = None
    strategy: StrategyName = StrategyName.REPLACE
    deployed_at: datetime
    backup_path: str | None = None
    success: bool
    error: str | None = None
    triggered_by: TriggeredBy = TriggeredBy.MANUAL


class BackupInfo(BaseModel):
    version: str | None
    reason: str
    created_at: datetime
    path: str
    size_bytes: int = 0
    files: int = 0


class RollbackRecord(BaseModel):
    id: str
    from_version: str | None
    to_version: str | None
    backup_path: str
    reason: str
    rolled_back_at: datetime
    deployment_id: str | None = None


class VersionMetadata(BaseModel):
    current_version: str = INITIAL_VERSION
    versions: dict[str, ModelVersion] = Field(default_factory=dict)
    # highest version ever issued; survives cleanup
    latest_version: str | None = None
    deployment_history: list[DeploymentRecord] = Field(default_factory=list)
    rollback_history: list[RollbackRecord] = Field(default_factory=list)
    last_update: datetime | None = None
    schema_version: str = SCHEMA_VERSION


class CreateVersionRequest(BaseModel):
    description: str = ""
    change_type: ChangeType = ChangeType.PATCH
    performance: VersionPerformance = Field(default_factory=VersionPerformance)
    retraining_reason: str | None = None
    training_metrics: dict[str, Any] = Field(default_factory=dict)


class DeployVersionRequest(BaseModel):
    create_backup: bool = True
    strategy: StrategyName = StrategyName.REPLACE
    rollback_on_failure: bool = True


class RollbackRequest(BaseModel):
    reason: str = "manual_rollback"


class BackupRequest(BaseModel):
    reason: str = "manual"


class CleanupResult(BaseModel):
    cleaned: int
    kept: int
    removed_versions: list[str] = Field(default_factory=list)


class VersionsInfo(BaseModel):
    current_version: str
    total_versions: int
    versions: list[ModelVersion]
    recent_deployments: list[DeploymentRecord]
    recent_rollbacks: list[RollbackRecord]


class VersionStatistics(BaseModel):
    total_versions: int
    by_status: dict[str, int]
    total_deployments: int
    successful_deployments: int
    failed_deployments: int
    total_rollbacks: int
    average_accuracy: float | None = None
    best_version: str | None = None
    latest_version: str | None = None
    current_version: str
