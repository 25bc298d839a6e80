"""Pydantic models for A/B experiments between classifier variants."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ExperimentStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"


class Group(StrEnum):
    A = "A"
    B = "B"


class ModelRef(BaseModel):
    version: str
    path: str = ""
    name: str = ""


class GroupMetrics(BaseModel):
    predictions: int = Field(default=0, ge=0)
    correct: int = Field(default=0, ge=0)
    total_confidence: float = Field(default=0.0, ge=0)

    @property
    def accuracy(self) -> float:
        return self.correct / self.predictions if self.predictions else 0.0

    @property
    def mean_confidence(self) -> float:
        return self.total_confidence / self.predictions if self.predictions else 0.0


class ExperimentMetrics(BaseModel):
    group_a: GroupMetrics = Field(default_factory=GroupMetrics)
    group_b: GroupMetrics = Field(default_factory=GroupMetrics)

    def for_group(self, group: Group) -> GroupMetrics:
        return self.group_a if group == Group.A else self.group_b

    @property
    def total_predictions(self) -> int:
        return self.group_a.predictions + self.group_b.predictions


class SignificanceResult(BaseModel):
    is_significant: bool = False
    p_value: float = Field(default=1.0, ge=0.0, le=1.0)
    z_score: float | None = None
    accuracy_a: float | None = None
    accuracy_b: float | None = None
    difference: float | None = None
    confidence_interval: tuple[float, float] | None = None
    winner: Group | None = None
    improvement: float | None = None  # |difference| in percentage points


class Experiment(BaseModel):
    id: str
    name: str
    description: str = ""
    model_a: ModelRef
    model_b: ModelRef
    split_percentage: int = Field(ge=0, le=100)
    start_time: datetime
    end_time: datetime | None = None
    status: ExperimentStatus = ExperimentStatus.RUNNING
    min_sample_size: int = Field(ge=0)
    max_duration_seconds: float = Field(gt=0)
    stratified: bool = True
    metrics: ExperimentMetrics = Field(default_factory=ExperimentMetrics)
    results: SignificanceResult | None = None


class Assignment(BaseModel):
    user_id: str
    experiment_id: str
    group: Group
    assigned_at: datetime
    context: dict[str, Any] = Field(default_factory=dict)


class CreateExperimentRequest(BaseModel):
    name: str = ""
    description: str = ""
    model_a: ModelRef | None = None
    model_b: ModelRef | None = None
    split_percentage: int | None = Field(default=None, ge=0, le=100)
    min_sample_size: int | None = Field(default=None, ge=0)
    max_duration_seconds: float | None = Field(default=None, gt=0)
    stratified: bool | None = None


class RecordOutcomeRequest(BaseModel):
    user_id: str = ""
    group: Group
    predicted_label: str
    actual_label: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class AssignRequest(BaseModel):
    user_id: str
    context: dict[str, Any] = Field(default_factory=dict)


class ExperimentResults(BaseModel):
    """Read model combining an experiment with its (cached or live) significance."""

    experiment_id: str
    name: str
    status: ExperimentStatus
    duration_seconds: float
    model_a: ModelRef
    model_b: ModelRef
    metrics: ExperimentMetrics
    significance: SignificanceResult
    total_predictions: int
    start_time: datetime
    end_time: datetime | None = None
