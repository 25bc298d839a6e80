"""Retraining trigger thresholds and scheduler configuration."""

import os
from dataclasses import asdict, dataclass, fields
from typing import Any


@dataclass
class TriggerThresholds:
    """Thresholds for the retraining triggers. Accuracies are percentages."""

    min_validations: int = 20
    min_validations_per_class: int = 5
    accuracy_drop_points: float = 5.0
    # Confidence buckets with fewer samples are not judged
    low_confidence_min_samples: int = 10
    low_confidence_accuracy_floor: float = 60.0
    max_days_since_training: float = 7.0
    # Bucket boundaries on the classifier's confidence in [0, 1]
    high_confidence_min: float = 0.8
    medium_confidence_min: float = 0.6
    history_capacity: int = 100

    @classmethod
    def from_env(cls) -> "TriggerThresholds":
        """Load thresholds with env var overrides. Env vars use RETRAIN_ prefix."""
        config = cls()
        if v := os.getenv("RETRAIN_MIN_VALIDATIONS"):
            config.min_validations = int(v)
        if v := os.getenv("RETRAIN_MIN_VALIDATIONS_PER_CLASS"):
            config.min_validations_per_class = int(v)
        if v := os.getenv("RETRAIN_ACCURACY_DROP_POINTS"):
            config.accuracy_drop_points = float(v)
        if v := os.getenv("RETRAIN_LOW_CONFIDENCE_FLOOR"):
            config.low_confidence_accuracy_floor = float(v)
        if v := os.getenv("RETRAIN_MAX_DAYS_SINCE_TRAINING"):
            config.max_days_since_training = float(v)
        return config


@dataclass
class SchedulerConfig:
    check_interval_seconds: float = 30 * 60
    max_retrainings_per_day: int = 3
    cooldown_hours: float = 6.0
    enable_auto_retraining: bool = True

    def __post_init__(self) -> None:
        if self.check_interval_seconds <= 0:
            raise ValueError(
                f"check_interval_seconds must be positive, got {self.check_interval_seconds}"
            )
        if self.max_retrainings_per_day < 0:
            raise ValueError(
                f"max_retrainings_per_day must be >= 0, got {self.max_retrainings_per_day}"
            )
        if self.cooldown_hours < 0:
            raise ValueError(f"cooldown_hours must be >= 0, got {self.cooldown_hours}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def updated(self, updates: dict[str, Any]) -> "SchedulerConfig":
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return SchedulerConfig(**{**self.to_dict(), **updates})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SchedulerConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        """Load config with env var overrides. Env vars use SCHEDULER_ prefix."""
        config = cls()
        if v := os.getenv("SCHEDULER_CHECK_INTERVAL_SECONDS"):
            config.check_interval_seconds = float(v)
        if v := os.getenv("SCHEDULER_MAX_RETRAININGS_PER_DAY"):
            config.max_retrainings_per_day = int(v)
        if v := os.getenv("SCHEDULER_COOLDOWN_HOURS"):
            config.cooldown_hours = float(v)
        if v := os.getenv("SCHEDULER_ENABLE_AUTO_RETRAINING"):
            config.enable_auto_retraining = v.lower() == "true"
        config.__post_init__()
        return config
