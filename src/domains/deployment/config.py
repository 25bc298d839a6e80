"""Winner selection gates and deployment behaviour.

The config is persisted (``winner_selection_config``) and can be updated at
runtime; environment variables only seed it on first start.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any

STRATEGIES = ("replace", "canary", "blue-green")


@dataclass
class WinnerSelectionConfig:
    auto_deploy_enabled: bool = True
    # Gates, applied in order
    minimum_confidence_level: float = 0.95
    minimum_improvement_threshold: float = 5.0  # accuracy points
    minimum_sample_size: int = 100
    minimum_test_duration_seconds: float = 24 * 3600

    rollback_on_failure: bool = True
    notification_enabled: bool = True
    deployment_strategy: str = "replace"
    canary_percentage: float = 10.0
    canary_steps: list[float] = field(default_factory=lambda: [25.0, 50.0, 75.0, 100.0])
    # Pause between canary ramp steps; zero disables waiting
    canary_step_delay_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.deployment_strategy not in STRATEGIES:
            raise ValueError(
                f"deployment_strategy must be one of {STRATEGIES}, got {self.deployment_strategy!r}"
            )
        if not 0 < self.minimum_confidence_level <= 1:
            raise ValueError(
                f"minimum_confidence_level must be within (0, 1], got {self.minimum_confidence_level}"
            )
        if not 0 < self.canary_percentage <= 100:
            raise ValueError(
                f"canary_percentage must be within (0, 100], got {self.canary_percentage}"
            )
        if not self.canary_steps or sorted(self.canary_steps) != list(self.canary_steps):
            raise ValueError("canary_steps must be a non-empty ascending list")
        if self.canary_steps[-1] != 100:
            raise ValueError("canary_steps must end at 100")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WinnerSelectionConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def updated(self, updates: dict[str, Any]) -> "WinnerSelectionConfig":
        """Return a validated copy with ``updates`` applied. Unknown keys raise."""
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        return self.from_dict({**self.to_dict(), **updates})

    @classmethod
    def from_env(cls) -> "WinnerSelectionConfig":
        """Load config with env var overrides. Env vars use WINNER_ prefix."""
        config = cls()
        if v := os.getenv("WINNER_AUTO_DEPLOY_ENABLED"):
            config.auto_deploy_enabled = v.lower() == "true"
        if v := os.getenv("WINNER_MIN_CONFIDENCE_LEVEL"):
            config.minimum_confidence_level = float(v)
        if v := os.getenv("WINNER_MIN_IMPROVEMENT"):
            config.minimum_improvement_threshold = float(v)
        if v := os.getenv("WINNER_MIN_SAMPLE_SIZE"):
            config.minimum_sample_size = int(v)
        if v := os.getenv("WINNER_MIN_TEST_DURATION_SECONDS"):
            config.minimum_test_duration_seconds = float(v)
        if v := os.getenv("WINNER_DEPLOYMENT_STRATEGY"):
            config.deployment_strategy = v
        if v := os.getenv("WINNER_CANARY_PERCENTAGE"):
            config.canary_percentage = float(v)
        config.__post_init__()
        return config
