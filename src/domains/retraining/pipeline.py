"""Retraining pipeline: prepare dataset, train, register and deploy.

Training progress arrives as an async stream of events ending with one
TrainingResult. A retrained model is deployed unless it is clearly worse
than the deployed one.
"""

from typing import Any

import structlog

from src.domains.retraining.models import RetrainingOutcome
from src.domains.versioning.models import (
    ChangeType,
    CreateVersionRequest,
    TriggeredBy,
    VersionPerformance,
)
from src.domains.versioning.store import ModelVersionStore
from src.shared.capabilities import (
    DatasetPreparer,
    Trainer,
    TrainingProgress,
    TrainingResult,
)
from src.shared.coordination import DEPLOYMENT, OperationCoordinator
from src.shared.errors import RetrainingFailedError

logger = structlog.get_logger()

# Accuracy deltas are fractions in [0, 1]
MAX_ACCEPTED_REGRESSION = -0.05
MINOR_BUMP_IMPROVEMENT = 0.05


class RetrainingPipeline:
    def __init__(
        self,
        store: ModelVersionStore,
        preparer: DatasetPreparer,
        trainer: Trainer,
        coordinator: OperationCoordinator,
        default_hyperparams: dict[str, Any] | None = None,
    ) -> None:
        self._store = store
        self._preparer = preparer
        self._trainer = trainer
        self._coordinator = coordinator
        self._default_hyperparams = default_hyperparams or {}

    async def run(
        self,
        options: dict[str, Any] | None = None,
        reason: str = "scheduled",
        triggered_by: TriggeredBy = TriggeredBy.AUTO,
    ) -> RetrainingOutcome:
        options = options or {}
        dataset = await self._preparer.prepare_dataset(options.get("dataset", {}))
        logger.info("dataset_prepared", path=dataset.path, class_counts=dataset.class_counts)

        hyperparams = {**self._default_hyperparams, **options.get("hyperparams", {})}
        result: TrainingResult | None = None
        history: list[TrainingProgress] = []
        async for event in self._trainer.retrain(dataset.path, hyperparams):
            if isinstance(event, TrainingResult):
                result = event
                continue
            history.append(event)
            logger.info(
                "training_progress",
                epoch=event.epoch,
                total_epochs=event.total_epochs,
                accuracy=round(event.accuracy, 4),
                loss=round(event.loss, 4),
                val_accuracy=event.val_accuracy,
            )

        if result is None:
            raise RetrainingFailedError(
                "Training finished without producing a result",
                details={"epochs_seen": len(history)},
            )

        deployed = self._store.deployed_version()
        baseline = deployed.performance.accuracy if deployed else None
        improvement = result.accuracy - baseline if baseline is not None else None

        outcome = RetrainingOutcome(
            deployed=False,
            reason="",
            triggered_by=triggered_by.value,
            accuracy=result.accuracy,
            loss=result.loss,
            baseline_accuracy=baseline,
            improvement=improvement,
            epochs=len(history),
            dataset_path=dataset.path,
            class_counts=dataset.class_counts,
        )

        if improvement is not None and improvement <= MAX_ACCEPTED_REGRESSION:
            outcome.reason = (
                f"New model accuracy {result.accuracy:.4f} regresses "
                f"{-improvement:.4f} from {baseline:.4f}"
            )
            logger.warning("retrained_model_rejected", accuracy=result.accuracy, baseline=baseline)
            return outcome

        change_type = (
            ChangeType.MINOR
            if improvement is not None and improvement > MINOR_BUMP_IMPROVEMENT
            else ChangeType.PATCH
        )
        version = self._store.register_artifact(
            result.artifact_ref,
            CreateVersionRequest(
                description=f"Retrained model ({reason})",
                change_type=change_type,
                performance=VersionPerformance(
                    accuracy=result.accuracy, loss=result.loss, improvement=improvement
                ),
                retraining_reason=reason,
                training_metrics={
                    "epochs": len(history),
                    "final_accuracy": result.accuracy,
                    "final_loss": result.loss,
                    "val_accuracy": history[-1].val_accuracy if history else None,
                    "class_counts": dataset.class_counts,
                },
            ),
        )

        with self._coordinator.exclusive(DEPLOYMENT, f"retraining:{version.version}"):
            record = self._store.deploy_version(version.version, triggered_by=triggered_by)

        outcome.deployed = True
        outcome.reason = "deployed"
        outcome.version = version.version
        outcome.deployment_id = record.id
        logger.info(
            "retrained_model_deployed",
            version=version.version,
            accuracy=result.accuracy,
            improvement=improvement,
        )
        return outcome
