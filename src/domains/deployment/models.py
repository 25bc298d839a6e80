"""Pydantic models for winner selection, deployment outcomes and routing."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from src.domains.experiments.models import Group, ModelRef
from src.domains.versioning.models import StrategyName, TriggeredBy


class Gate(StrEnum):
    SIGNIFICANCE = "significance"
    CONFIDENCE = "confidence"
    IMPROVEMENT = "improvement"
    SAMPLE_SIZE = "sample_size"
    DURATION = "duration"


class Slot(StrEnum):
    BLUE = "blue"
    GREEN = "green"

    @property
    def other(self) -> "Slot":
        return Slot.GREEN if self == Slot.BLUE else Slot.BLUE


class WinnerEvaluation(BaseModel):
    experiment_id: str
    can_deploy: bool
    reason: str
    failed_gate: Gate | None = None
    winner: Group | None = None
    winner_model: ModelRef | None = None
    confidence: float | None = None
    improvement: float | None = None
    p_value: float | None = None
    total_predictions: int = 0
    duration_seconds: float = 0.0


class VerificationCheck(BaseModel):
    name: str
    passed: bool
    detail: str = ""


class VerificationResult(BaseModel):
    passed: bool
    checks: list[VerificationCheck] = Field(default_factory=list)
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_checks(self) -> list[str]:
        return [c.name for c in self.checks if not c.passed]


class DeploymentOutcome(BaseModel):
    deployed: bool
    reason: str = ""
    experiment_id: str | None = None
    version: str | None = None
    previous_version: str | None = None
    strategy: StrategyName | None = None
    deployment_id: str | None = None
    backup_path: str | None = None
    verification: VerificationResult | None = None
    rolled_back: bool = False
    rollback_outcome: str | None = None
    canary_weight: float | None = None
    evaluation: WinnerEvaluation | None = None


class WinnerDeploymentRecord(BaseModel):
    id: str
    experiment_id: str
    evaluation: WinnerEvaluation
    outcome: DeploymentOutcome
    triggered_by: TriggeredBy
    force_override: bool = False
    strategy: StrategyName
    recorded_at: datetime
    success: bool


class RoutingState(BaseModel):
    """Routing declaration consumed by the inference layer."""

    active_slot: Slot = Slot.BLUE
    slots: dict[str, str | None] = Field(
        default_factory=lambda: {Slot.BLUE.value: None, Slot.GREEN.value: None}
    )
    canary_version: str | None = None
    canary_weight: float = 0.0
    canary_experiment_id: str | None = None
    updated_at: datetime | None = None


class CanaryStep(BaseModel):
    weight: float
    healthy: bool
    detail: str = ""


class CanaryPromotion(BaseModel):
    experiment_id: str
    promoted: bool
    reason: str = ""
    final_weight: float
    version: str | None = None
    steps: list[CanaryStep] = Field(default_factory=list)


class DeploymentStats(BaseModel):
    total: int
    successful: int
    automatic: int
    manual: int
    success_rate: float
    average_improvement: float


class ManualDeployRequest(BaseModel):
    force_override: bool = False
