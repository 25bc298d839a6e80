"""Error taxonomy shared by every lifecycle component.

Each error carries the HTTP status the API layer answers with, plus an
optional ``details`` payload (e.g. the rollback outcome of a failed
deployment) that is echoed back to the caller.
"""

from typing import Any


class LifecycleError(Exception):
    """Base class for all model lifecycle errors."""

    status_code: int = 500
    error_code: str = "lifecycle_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, "details": self.details}


class InvalidConfigError(LifecycleError, ValueError):
    """Bad input. Rejected before any side effect."""

    status_code = 400
    error_code = "invalid_config"


class NotFoundError(LifecycleError, LookupError):
    """Unknown experiment, version or backup."""

    status_code = 404
    error_code = "not_found"


class NotReadyError(LifecycleError):
    """Experiment not concluded, or criteria not met for the operation."""

    status_code = 422
    error_code = "not_ready"


class NoPriorVersionError(NotReadyError):
    """Rollback requested with fewer than two successful deployments."""

    error_code = "no_prior_version"


class ConflictError(LifecycleError):
    """A deployment or retraining is already in flight."""

    status_code = 409
    error_code = "conflict"


class DeploymentFailedError(LifecycleError):
    """Swap or verification failed. ``details`` holds the recovery outcome."""

    status_code = 500
    error_code = "deployment_failed"


class RollbackFailedError(LifecycleError):
    """Secondary failure while recovering from a failed deployment."""

    status_code = 500
    error_code = "rollback_failed"


class PersistenceFailedError(LifecycleError):
    """Durable write failed; the in-memory state was not committed."""

    status_code = 500
    error_code = "persistence_failed"


class RetrainingFailedError(LifecycleError):
    """Dataset preparation or training did not produce a usable artifact."""

    status_code = 500
    error_code = "retraining_failed"
