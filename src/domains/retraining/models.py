"""Pydantic models for validation metrics, retraining triggers and the scheduler."""

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

CLASSES = ("dog", "cat")


class TriggerType(StrEnum):
    MIN_VALIDATIONS_REACHED = "MIN_VALIDATIONS_REACHED"
    ACCURACY_DROP = "ACCURACY_DROP"
    LOW_CONFIDENCE_ACCURACY = "LOW_CONFIDENCE_ACCURACY"
    TIME_BASED = "TIME_BASED"
    # Scheduler bookkeeping
    RETRAINING_STARTED = "RETRAINING_STARTED"
    RETRAINING_EXECUTED = "RETRAINING_EXECUTED"
    RETRAINING_NOT_DEPLOYED = "RETRAINING_NOT_DEPLOYED"
    RETRAINING_FAILED = "RETRAINING_FAILED"


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConfidenceBucket(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RetrainingTrigger(BaseModel):
    type: TriggerType
    reason: str
    priority: Priority
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)


class TriggerHistory(BaseModel):
    """Bounded ring of triggers, newest last."""

    triggers: list[RetrainingTrigger] = Field(default_factory=list)
    last_check: datetime | None = None
    total_triggers: int = 0


class Tally(BaseModel):
    total: int = 0
    correct: int = 0

    @property
    def accuracy(self) -> float:
        """Percentage of correct outcomes."""
        return self.correct / self.total * 100 if self.total else 0.0


class ValidationMetrics(BaseModel):
    total_validations: int = 0
    correct: int = 0
    incorrect: int = 0
    by_class: dict[str, Tally] = Field(default_factory=lambda: {c: Tally() for c in CLASSES})
    by_confidence: dict[str, Tally] = Field(
        default_factory=lambda: {b.value: Tally() for b in ConfidenceBucket}
    )
    daily: dict[str, Tally] = Field(default_factory=dict)
    last_updated: datetime | None = None

    @property
    def accuracy_rate(self) -> float:
        return self.correct / self.total_validations * 100 if self.total_validations else 0.0


class ValidationRequest(BaseModel):
    predicted_class: str
    is_correct: bool
    confidence: float = Field(ge=0.0, le=1.0)


class TriggerEvaluation(BaseModel):
    should_retrain: bool
    triggers: list[RetrainingTrigger]
    recommendations: list[str] = Field(default_factory=list)
    accuracy_rate: float
    total_validations: int
    baseline_accuracy: float | None = None
    evaluated_at: datetime


class RetrainingOutcome(BaseModel):
    deployed: bool
    reason: str
    triggered_by: str
    version: str | None = None
    deployment_id: str | None = None
    accuracy: float | None = None
    loss: float | None = None
    baseline_accuracy: float | None = None
    improvement: float | None = None
    epochs: int = 0
    dataset_path: str | None = None
    class_counts: dict[str, int] = Field(default_factory=dict)


class TickResult(BaseModel):
    checked_at: datetime
    action: Literal["disabled", "blocked", "no_retrain", "retrained", "not_deployed", "conflict", "failed"]
    reason: str = ""
    evaluation: TriggerEvaluation | None = None
    outcome: RetrainingOutcome | None = None


class SchedulerStatus(BaseModel):
    is_running: bool
    retraining_in_progress: bool
    last_check: datetime | None = None
    config: dict[str, Any]
    retrainings_today: int
    hours_since_last_retraining: float | None = None
    can_retrain: bool
    blocked_reason: str | None = None


class SchedulerStatistics(BaseModel):
    total_triggers: int
    triggers_by_type: dict[str, int]
    retrainings_executed: int
    retrainings_failed: int
    retrainings_not_deployed: int
    retrainings_today: int
    last_retraining: datetime | None = None


class SchedulerControlRequest(BaseModel):
    action: Literal["start", "stop"]


class RetrainRequest(BaseModel):
    options: dict[str, Any] = Field(default_factory=dict)
    reason: str = "manual"
