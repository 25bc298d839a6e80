"""Protocols for the external collaborators the lifecycle service drives.

The image classifier (inference and training) and the dataset preparation
pipeline live outside this service. They are consumed only through these
interfaces and injected at the composition root.
"""

from collections.abc import AsyncIterator
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .errors import RetrainingFailedError


class Prediction(BaseModel):
    label: str  # 'dog' or 'cat'
    confidence: float


class PreparedDataset(BaseModel):
    path: str
    class_counts: dict[str, int] = Field(default_factory=dict)


class TrainingProgress(BaseModel):
    """One training-progress event (typically emitted per epoch)."""

    epoch: int
    total_epochs: int
    accuracy: float
    loss: float
    val_accuracy: float | None = None
    val_loss: float | None = None


class TrainingResult(BaseModel):
    accuracy: float
    loss: float
    artifact_ref: str  # directory holding the trained artifact files


class Classifier(Protocol):
    def predict(self, image: bytes) -> Prediction: ...


class Trainer(Protocol):
    def retrain(
        self, dataset_ref: str, hyperparams: dict[str, Any]
    ) -> AsyncIterator["TrainingProgress | TrainingResult"]:
        """Yield progress events and finally one TrainingResult."""
        ...


class DatasetPreparer(Protocol):
    async def prepare_dataset(self, options: dict[str, Any]) -> PreparedDataset: ...


class UnconfiguredTrainer:
    """Placeholder used when no training backend is wired in."""

    async def retrain(
        self, dataset_ref: str, hyperparams: dict[str, Any]
    ) -> AsyncIterator[TrainingProgress | TrainingResult]:
        raise RetrainingFailedError("No training backend is configured")
        yield  # pragma: no cover


class UnconfiguredDatasetPreparer:
    async def prepare_dataset(self, options: dict[str, Any]) -> PreparedDataset:
        raise RetrainingFailedError("No dataset preparation backend is configured")
