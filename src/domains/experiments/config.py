"""A/B experiment defaults. Per-experiment values override these at creation."""

import os
from dataclasses import dataclass


@dataclass
class ExperimentConfig:
    """Orchestrator-wide defaults for new experiments."""

    # % of traffic routed to model A
    split_percentage: int = 50
    # Total predictions (both groups) before a test may conclude
    minimum_sample_size: int = 50
    significance_level: float = 0.05
    # Hard cap on test duration; exceeding it forces conclusion
    max_duration_seconds: float = 7 * 24 * 3600
    # Minimum time a test must run before the sample-size rule may conclude it
    minimum_evaluation_window_seconds: float = 24 * 3600
    stratified_sampling: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.split_percentage <= 100:
            raise ValueError(
                f"split_percentage must be within [0, 100], got {self.split_percentage}"
            )
        if not 0 < self.significance_level < 1:
            raise ValueError(
                f"significance_level must be within (0, 1), got {self.significance_level}"
            )

    @classmethod
    def from_env(cls) -> "ExperimentConfig":
        """Load config with env var overrides. Env vars use ABTEST_ prefix."""
        config = cls()
        if v := os.getenv("ABTEST_SPLIT_PERCENTAGE"):
            config.split_percentage = int(v)
        if v := os.getenv("ABTEST_MIN_SAMPLE_SIZE"):
            config.minimum_sample_size = int(v)
        if v := os.getenv("ABTEST_SIGNIFICANCE_LEVEL"):
            config.significance_level = float(v)
        if v := os.getenv("ABTEST_MAX_DURATION_SECONDS"):
            config.max_duration_seconds = float(v)
        if v := os.getenv("ABTEST_STRATIFIED"):
            config.stratified_sampling = v.lower() == "true"
        config.__post_init__()
        return config


default_config = ExperimentConfig()
