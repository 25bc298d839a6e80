"""Application configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "model-lifecycle"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = True

    host: str = "0.0.0.0"
    port: int = 8000

    # Root for persisted documents (<storage_dir>/state) and artifacts (<storage_dir>/models)
    storage_dir: str = "./data"

    # Retraining scheduler
    scheduler_autostart: bool = True
    scheduler_check_interval_seconds: float = 1800.0

    # Winner selection seeds (persisted config wins once written)
    auto_deploy_enabled: bool = True
    deployment_strategy: str = "replace"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @property
    def state_dir(self) -> Path:
        return Path(self.storage_dir) / "state"

    @property
    def models_dir(self) -> Path:
        return Path(self.storage_dir) / "models"


settings = Settings()
