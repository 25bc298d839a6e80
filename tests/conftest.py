"""Shared test fixtures and fakes for the model lifecycle tests."""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from src.domains.experiments.config import ExperimentConfig
from src.domains.experiments.orchestrator import ExperimentOrchestrator
from src.domains.retraining.config import TriggerThresholds
from src.domains.retraining.monitor import RetrainingMonitor
from src.domains.retraining.validation_metrics import ValidationMetricsTracker
from src.domains.versioning.store import ModelVersionStore
from src.shared.capabilities import (
    Prediction,
    PreparedDataset,
    TrainingProgress,
    TrainingResult,
)
from src.shared.clock import FakeClock
from src.shared.coordination import OperationCoordinator
from src.shared.repository import InMemoryRepository


def write_artifact(path: Path, files: dict[str, bytes]) -> Path:
    """Replace ``path`` contents with ``files`` (relative name -> bytes)."""
    path.mkdir(parents=True, exist_ok=True)
    for name, content in files.items():
        target = path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
    return path


def read_tree(path: Path) -> dict[str, bytes]:
    """Snapshot every file under ``path`` for byte-for-byte comparisons."""
    return {
        str(p.relative_to(path)): p.read_bytes() for p in sorted(path.rglob("*")) if p.is_file()
    }


class FakeClassifier:
    def __init__(self, label: str = "dog", confidence: float = 0.9, error: Exception | None = None):
        self.label = label
        self.confidence = confidence
        self.error = error
        self.calls = 0

    def predict(self, image: bytes) -> Prediction:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return Prediction(label=self.label, confidence=self.confidence)


class FakeDatasetPreparer:
    def __init__(self, path: str = "/data/validated", class_counts: dict[str, int] | None = None):
        self.path = path
        self.class_counts = class_counts or {"dog": 30, "cat": 30}
        self.calls: list[dict[str, Any]] = []

    async def prepare_dataset(self, options: dict[str, Any]) -> PreparedDataset:
        self.calls.append(options)
        return PreparedDataset(path=self.path, class_counts=self.class_counts)


class FakeTrainer:
    """Emits one progress event per epoch, then a result pointing at ``artifact_dir``.

    When ``gate`` is set, training waits on it after the first epoch so tests
    can observe a retraining in progress.
    """

    def __init__(
        self,
        artifact_dir: Path,
        accuracy: float = 0.9,
        loss: float = 0.2,
        epochs: int = 3,
        gate: asyncio.Event | None = None,
        error: Exception | None = None,
    ):
        self.artifact_dir = artifact_dir
        self.accuracy = accuracy
        self.loss = loss
        self.epochs = epochs
        self.gate = gate
        self.error = error
        self.calls = 0
        self.hyperparams: dict[str, Any] | None = None
        self.started = asyncio.Event()

    async def retrain(self, dataset_ref: str, hyperparams: dict[str, Any]):
        self.calls += 1
        self.hyperparams = hyperparams
        self.started.set()
        for epoch in range(1, self.epochs + 1):
            yield TrainingProgress(
                epoch=epoch,
                total_epochs=self.epochs,
                accuracy=self.accuracy * epoch / self.epochs,
                loss=self.loss * (self.epochs - epoch + 1),
                val_accuracy=self.accuracy,
            )
            if epoch == 1 and self.gate is not None:
                await self.gate.wait()
        if self.error is not None:
            raise self.error
        write_artifact(self.artifact_dir, {"model.json": b'{"retrained": true}'})
        yield TrainingResult(
            accuracy=self.accuracy, loss=self.loss, artifact_ref=str(self.artifact_dir)
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def coordinator() -> OperationCoordinator:
    return OperationCoordinator()


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    return tmp_path / "models"


@pytest.fixture
def store(repository, clock, models_dir) -> ModelVersionStore:
    return ModelVersionStore(repository, clock, models_dir)


V1_FILES = {"model.json": b'{"v": 1}', "weights.bin": b"\x01" * 64}
V2_FILES = {"model.json": b'{"v": 2}', "weights.bin": b"\x02" * 64}


@pytest.fixture
def seeded_store(store, clock, tmp_path) -> ModelVersionStore:
    """Store with 1.0.1 deployed (V1_FILES active) and 1.0.2 created (V2_FILES)."""
    write_artifact(store.active_path, V1_FILES)
    store.create_version({"description": "baseline", "performance": {"accuracy": 0.85}})
    store.deploy_version("1.0.1")
    clock.advance(hours=1)

    incoming = write_artifact(tmp_path / "incoming", V2_FILES)
    store.register_artifact(
        incoming, {"description": "candidate", "performance": {"accuracy": 0.9}}
    )
    clock.advance(hours=1)
    return store


@pytest.fixture
def experiment_config() -> ExperimentConfig:
    return ExperimentConfig()


@pytest.fixture
def orchestrator(repository, clock, experiment_config) -> ExperimentOrchestrator:
    return ExperimentOrchestrator(repository, clock, experiment_config)


@pytest.fixture
def thresholds() -> TriggerThresholds:
    return TriggerThresholds()


@pytest.fixture
def tracker(repository, clock, thresholds) -> ValidationMetricsTracker:
    return ValidationMetricsTracker(repository, clock, thresholds)


@pytest.fixture
def monitor(tracker, seeded_store, repository, clock, thresholds) -> RetrainingMonitor:
    return RetrainingMonitor(tracker, seeded_store, repository, clock, thresholds)


def record_validations(tracker, count: int, correct: int, confidence: float = 0.9) -> None:
    """Record ``count`` validations alternating dog/cat, the first ``correct`` right."""
    for i in range(count):
        tracker.record_validation("dog" if i % 2 == 0 else "cat", i < correct, confidence)
