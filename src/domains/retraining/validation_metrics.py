"""Aggregated user-validation metrics feeding the retraining monitor."""

import threading

import structlog

from src.domains.retraining.config import TriggerThresholds
from src.domains.retraining.models import (
    CLASSES,
    ConfidenceBucket,
    Tally,
    ValidationMetrics,
)
from src.shared.clock import Clock
from src.shared.errors import InvalidConfigError
from src.shared.repository import VALIDATION_METRICS, DocumentRepository

logger = structlog.get_logger()


def confidence_bucket(confidence: float, thresholds: TriggerThresholds) -> ConfidenceBucket:
    if confidence >= thresholds.high_confidence_min:
        return ConfidenceBucket.HIGH
    if confidence >= thresholds.medium_confidence_min:
        return ConfidenceBucket.MEDIUM
    return ConfidenceBucket.LOW


class ValidationMetricsTracker:
    def __init__(
        self,
        repository: DocumentRepository,
        clock: Clock,
        thresholds: TriggerThresholds | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._thresholds = thresholds or TriggerThresholds()
        self._lock = threading.Lock()
        raw = repository.load(VALIDATION_METRICS)
        self._metrics = ValidationMetrics.model_validate(raw) if raw else ValidationMetrics()

    def snapshot(self) -> ValidationMetrics:
        return self._metrics.model_copy(deep=True)

    def record_validation(
        self, predicted_class: str, is_correct: bool, confidence: float
    ) -> ValidationMetrics:
        """Count one user validation of a prediction."""
        if predicted_class not in CLASSES:
            raise InvalidConfigError(
                f"Unknown class {predicted_class!r}; expected one of {CLASSES}"
            )
        if not 0.0 <= confidence <= 1.0:
            raise InvalidConfigError(f"confidence must be within [0, 1], got {confidence}")

        now = self._clock.now()
        bucket = confidence_bucket(confidence, self._thresholds)
        with self._lock:
            metrics = self._metrics.model_copy(deep=True)
            metrics.total_validations += 1
            if is_correct:
                metrics.correct += 1
            else:
                metrics.incorrect += 1

            day = metrics.daily.setdefault(now.date().isoformat(), Tally())
            for tally in (metrics.by_class[predicted_class], metrics.by_confidence[bucket.value], day):
                tally.total += 1
                if is_correct:
                    tally.correct += 1
            metrics.last_updated = now

            self._repository.save(VALIDATION_METRICS, metrics.model_dump(mode="json"))
            self._metrics = metrics

        logger.debug(
            "validation_recorded",
            predicted_class=predicted_class,
            is_correct=is_correct,
            bucket=bucket.value,
            total=metrics.total_validations,
        )
        return metrics.model_copy(deep=True)

    def reset(self) -> None:
        with self._lock:
            metrics = ValidationMetrics(last_updated=self._clock.now())
            self._repository.save(VALIDATION_METRICS, metrics.model_dump(mode="json"))
            self._metrics = metrics
        logger.info("validation_metrics_reset")
