"""Retraining trigger monitor.

Reads aggregated validation metrics and the deployed version's training
accuracy, and turns them into typed triggers:

- MIN_VALIDATIONS_REACHED (medium): enough feedback overall and per class
- ACCURACY_DROP (high): observed accuracy fell below the training baseline
- LOW_CONFIDENCE_ACCURACY (medium): a confidence bucket performs poorly
- TIME_BASED (low): the model is older than the maximum interval

Every fired trigger is appended to a bounded, persisted history.
"""

import threading
from collections import Counter
from datetime import datetime
from typing import Any

import structlog

from src.domains.retraining.config import TriggerThresholds
from src.domains.retraining.models import (
    ConfidenceBucket,
    Priority,
    RetrainingTrigger,
    TriggerEvaluation,
    TriggerHistory,
    TriggerType,
    ValidationMetrics,
)
from src.domains.retraining.validation_metrics import ValidationMetricsTracker
from src.domains.versioning.store import ModelVersionStore
from src.shared.clock import Clock
from src.shared.repository import TRIGGER_HISTORY, DocumentRepository

logger = structlog.get_logger()

VOLUME_TRIGGERS = frozenset({TriggerType.MIN_VALIDATIONS_REACHED})
TIME_TRIGGERS = frozenset({TriggerType.TIME_BASED})


def should_retrain(triggers: list[RetrainingTrigger]) -> bool:
    """Any high-priority trigger, two or more medium ones, or volume plus time."""
    priorities = Counter(t.priority for t in triggers)
    types = {t.type for t in triggers}
    if priorities[Priority.HIGH] > 0:
        return True
    if priorities[Priority.MEDIUM] >= 2:
        return True
    return bool(types & VOLUME_TRIGGERS) and bool(types & TIME_TRIGGERS)


def build_recommendations(
    triggers: list[RetrainingTrigger], metrics: ValidationMetrics
) -> list[str]:
    recommendations = []
    if not triggers:
        recommendations.append("Model healthy; no retraining required")
    for trigger in triggers:
        if trigger.type == TriggerType.ACCURACY_DROP:
            recommendations.append("Accuracy dropped significantly; retrain urgently")
        elif trigger.type == TriggerType.MIN_VALIDATIONS_REACHED:
            recommendations.append("Enough validations collected; consider retraining")
        elif trigger.type == TriggerType.LOW_CONFIDENCE_ACCURACY:
            recommendations.append(
                f"Low accuracy in {trigger.data.get('bucket')} confidence bucket; "
                "review training data"
            )
        elif trigger.type == TriggerType.TIME_BASED:
            recommendations.append("Scheduled retraining due; keep the model current")

    if metrics.total_validations < 10:
        recommendations.append("Few validations available; collect more user feedback")
    dog = metrics.by_class["dog"].total
    cat = metrics.by_class["cat"].total
    if abs(dog - cat) > 10:
        recommendations.append("Validation set is unbalanced; rebalance classes before training")
    return recommendations


class RetrainingMonitor:
    def __init__(
        self,
        tracker: ValidationMetricsTracker,
        store: ModelVersionStore,
        repository: DocumentRepository,
        clock: Clock,
        thresholds: TriggerThresholds | None = None,
    ) -> None:
        self._tracker = tracker
        self._store = store
        self._repository = repository
        self._clock = clock
        self._thresholds = thresholds or TriggerThresholds()
        self._lock = threading.Lock()
        raw = repository.load(TRIGGER_HISTORY)
        self._history = TriggerHistory.model_validate(raw) if raw else TriggerHistory()

    @property
    def thresholds(self) -> TriggerThresholds:
        return self._thresholds

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _commit(self, history: TriggerHistory) -> None:
        history.triggers = history.triggers[-self._thresholds.history_capacity :]
        self._repository.save(TRIGGER_HISTORY, history.model_dump(mode="json"))
        self._history = history

    def record(
        self,
        trigger_type: TriggerType,
        reason: str,
        priority: Priority = Priority.LOW,
        data: dict[str, Any] | None = None,
    ) -> RetrainingTrigger:
        trigger = RetrainingTrigger(
            type=trigger_type,
            reason=reason,
            priority=priority,
            timestamp=self._clock.now(),
            data=data or {},
        )
        with self._lock:
            history = self._history.model_copy(deep=True)
            history.triggers.append(trigger)
            history.total_triggers += 1
            self._commit(history)
        logger.info("trigger_recorded", type=trigger_type.value, reason=reason)
        return trigger

    def history(self, limit: int | None = None) -> list[RetrainingTrigger]:
        triggers = list(self._history.triggers)
        return triggers[-limit:] if limit else triggers

    @property
    def last_check(self) -> datetime | None:
        return self._history.last_check

    @property
    def total_triggers(self) -> int:
        return self._history.total_triggers

    def triggers_of_type(self, trigger_type: TriggerType) -> list[RetrainingTrigger]:
        return [t for t in self._history.triggers if t.type == trigger_type]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def baseline_accuracy(self) -> float | None:
        """Deployed version's training accuracy as a percentage."""
        deployed = self._store.deployed_version()
        if deployed is None or deployed.performance.accuracy is None:
            return None
        return deployed.performance.accuracy * 100

    def last_training_time(self) -> datetime | None:
        candidates = [t.timestamp for t in self.triggers_of_type(TriggerType.RETRAINING_EXECUTED)]
        deployed = self._store.deployed_version()
        if deployed is not None:
            candidates.append(deployed.created_at)
        return max(candidates) if candidates else None

    def _detect(self, metrics: ValidationMetrics) -> list[RetrainingTrigger]:
        th = self._thresholds
        now = self._clock.now()
        triggers: list[RetrainingTrigger] = []

        per_class = min(metrics.by_class[c].total for c in metrics.by_class)
        if (
            metrics.total_validations >= th.min_validations
            and per_class >= th.min_validations_per_class
        ):
            triggers.append(
                RetrainingTrigger(
                    type=TriggerType.MIN_VALIDATIONS_REACHED,
                    reason=(
                        f"Minimum validations reached: {metrics.total_validations} total, "
                        f"{per_class} per class"
                    ),
                    priority=Priority.MEDIUM,
                    timestamp=now,
                    data={
                        "total_validations": metrics.total_validations,
                        "validations_per_class": per_class,
                    },
                )
            )

        baseline = self.baseline_accuracy()
        current = metrics.accuracy_rate
        if (
            baseline is not None
            and metrics.total_validations > 0
            and baseline - current >= th.accuracy_drop_points
        ):
            triggers.append(
                RetrainingTrigger(
                    type=TriggerType.ACCURACY_DROP,
                    reason=f"Accuracy dropped {baseline - current:.2f} points "
                    f"(from {baseline:.2f}% to {current:.2f}%)",
                    priority=Priority.HIGH,
                    timestamp=now,
                    data={
                        "current_accuracy": current,
                        "baseline_accuracy": baseline,
                        "drop": baseline - current,
                    },
                )
            )

        for bucket in ConfidenceBucket:
            tally = metrics.by_confidence[bucket.value]
            if (
                tally.total >= th.low_confidence_min_samples
                and tally.accuracy < th.low_confidence_accuracy_floor
            ):
                triggers.append(
                    RetrainingTrigger(
                        type=TriggerType.LOW_CONFIDENCE_ACCURACY,
                        reason=f"Accuracy in {bucket.value} confidence bucket: "
                        f"{tally.accuracy:.2f}% ({tally.total} samples)",
                        priority=Priority.MEDIUM,
                        timestamp=now,
                        data={
                            "bucket": bucket.value,
                            "accuracy": tally.accuracy,
                            "sample_count": tally.total,
                        },
                    )
                )

        last_training = self.last_training_time()
        if last_training is not None:
            days = (now - last_training).total_seconds() / 86400
            if days >= th.max_days_since_training:
                triggers.append(
                    RetrainingTrigger(
                        type=TriggerType.TIME_BASED,
                        reason=f"{days:.1f} days since last training",
                        priority=Priority.LOW,
                        timestamp=now,
                        data={"days_since_last_training": days},
                    )
                )
        return triggers

    def evaluate_triggers(self) -> TriggerEvaluation:
        metrics = self._tracker.snapshot()
        triggers = self._detect(metrics)
        decision = should_retrain(triggers)
        now = self._clock.now()

        with self._lock:
            history = self._history.model_copy(deep=True)
            history.triggers.extend(triggers)
            history.total_triggers += len(triggers)
            history.last_check = now
            self._commit(history)

        logger.info(
            "triggers_evaluated",
            triggers=[t.type.value for t in triggers],
            should_retrain=decision,
            accuracy_rate=round(metrics.accuracy_rate, 2),
            total_validations=metrics.total_validations,
        )
        return TriggerEvaluation(
            should_retrain=decision,
            triggers=triggers,
            recommendations=build_recommendations(triggers, metrics),
            accuracy_rate=metrics.accuracy_rate,
            total_validations=metrics.total_validations,
            baseline_accuracy=self.baseline_accuracy(),
            evaluated_at=now,
        )
