"""Version store configuration."""

import os
from dataclasses import dataclass


@dataclass
class VersioningConfig:
    # Versions kept by cleanup when the caller does not say otherwise
    default_keep_count: int = 10
    create_backup_on_deploy: bool = True
    rollback_on_failure: bool = True
    recent_deployments_shown: int = 10
    recent_rollbacks_shown: int = 5

    @classmethod
    def from_env(cls) -> "VersioningConfig":
        """Load config with env var overrides. Env vars use VERSIONING_ prefix."""
        config = cls()
        if v := os.getenv("VERSIONING_DEFAULT_KEEP_COUNT"):
            config.default_keep_count = int(v)
        if v := os.getenv("VERSIONING_CREATE_BACKUP_ON_DEPLOY"):
            config.create_backup_on_deploy = v.lower() == "true"
        if v := os.getenv("VERSIONING_ROLLBACK_ON_FAILURE"):
            config.rollback_on_failure = v.lower() == "true"
        return config


default_config = VersioningConfig()
