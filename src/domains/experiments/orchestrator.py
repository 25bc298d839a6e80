"""A/B test orchestrator: assignment, outcome recording, conclusion, lifecycle.

State is loaded from the repository at construction and every mutation is
persisted before the in-memory copy is replaced. Experiments are independent,
so each has its own lock; only the final persist-and-swap step is shared.
"""

import hashlib
import threading
import uuid
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from src.domains.experiments.config import ExperimentConfig, default_config
from src.domains.experiments.models import (
    Assignment,
    CreateExperimentRequest,
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    Group,
)
from src.domains.experiments.statistics import compute_significance
from src.shared.clock import Clock
from src.shared.errors import ConflictError, InvalidConfigError, NotFoundError, NotReadyError
from src.shared.repository import ASSIGNMENTS, EXPERIMENTS, DocumentRepository

logger = structlog.get_logger()

# Multipliers spreading the contextual buckets across the modulo range
_HOUR_WEIGHT = 7
_WEEKDAY_WEIGHT = 11
_USER_AGENT_WEIGHT = 13
_USER_AGENT_BUCKETS = 10


def _stable_hash(value: str) -> int:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def _assignment_key(user_id: str, experiment_id: str) -> str:
    return f"{experiment_id}:{user_id}"


def _bucket_for(
    user_id: str,
    experiment_id: str,
    stratified: bool,
    context: dict[str, Any],
    moment: datetime,
) -> int:
    """Deterministic bucket in [0, 100) for a user within an experiment."""
    user_hash = _stable_hash(f"{user_id}:{experiment_id}")
    if not stratified:
        return user_hash % 100

    user_agent = str(context.get("user_agent", ""))
    ua_bucket = _stable_hash(user_agent) % _USER_AGENT_BUCKETS
    composite = (
        user_hash
        + moment.hour * _HOUR_WEIGHT
        + moment.weekday() * _WEEKDAY_WEIGHT
        + ua_bucket * _USER_AGENT_WEIGHT
    )
    return composite % 100


class ExperimentOrchestrator:
    def __init__(
        self,
        repository: DocumentRepository,
        clock: Clock,
        config: ExperimentConfig | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._config = config or default_config

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._persist_lock = threading.Lock()

        raw_experiments = repository.load(EXPERIMENTS) or {}
        raw_assignments = repository.load(ASSIGNMENTS) or {}
        self._experiments: dict[str, Experiment] = {
            exp_id: Experiment.model_validate(data) for exp_id, data in raw_experiments.items()
        }
        self._assignments: dict[str, Assignment] = {
            key: Assignment.model_validate(data) for key, data in raw_assignments.items()
        }
        logger.info(
            "experiments_loaded",
            experiments=len(self._experiments),
            assignments=len(self._assignments),
        )

    @property
    def config(self) -> ExperimentConfig:
        return self._config

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _lock_for(self, experiment_id: str) -> threading.Lock:
        """Per-experiment lock; only known experiments get one."""
        with self._locks_guard:
            self._require(experiment_id)
            return self._locks.setdefault(experiment_id, threading.Lock())

    def _commit_experiment(self, experiment: Experiment) -> None:
        with self._persist_lock:
            candidate = dict(self._experiments)
            candidate[experiment.id] = experiment
            self._repository.save(
                EXPERIMENTS, {k: v.model_dump(mode="json") for k, v in candidate.items()}
            )
            self._experiments = candidate

    def _commit_assignment(self, assignment: Assignment) -> None:
        with self._persist_lock:
            candidate = dict(self._assignments)
            candidate[_assignment_key(assignment.user_id, assignment.experiment_id)] = assignment
            self._repository.save(
                ASSIGNMENTS, {k: v.model_dump(mode="json") for k, v in candidate.items()}
            )
            self._assignments = candidate

    def _require(self, experiment_id: str) -> Experiment:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise NotFoundError(
                f"Experiment {experiment_id} not found",
                details={"experiment_id": experiment_id},
            )
        return experiment

    def _elapsed_seconds(self, experiment: Experiment) -> float:
        end = experiment.end_time or self._clock.now()
        return (end - experiment.start_time).total_seconds()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_experiment(self, request: CreateExperimentRequest | dict[str, Any]) -> Experiment:
        """Validate and persist a new running experiment."""
        if isinstance(request, dict):
            try:
                request = CreateExperimentRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidConfigError(str(e)) from e

        missing = [
            name
            for name, value in (
                ("name", request.name),
                ("model_a", request.model_a),
                ("model_b", request.model_b),
            )
            if not value
        ]
        if missing:
            raise InvalidConfigError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing": missing},
            )

        cfg = self._config
        experiment = Experiment(
            id=f"exp_{uuid.uuid4().hex[:12]}",
            name=request.name,
            description=request.description,
            model_a=request.model_a,
            model_b=request.model_b,
            split_percentage=(
                request.split_percentage
                if request.split_percentage is not None
                else cfg.split_percentage
            ),
            start_time=self._clock.now(),
            min_sample_size=(
                request.min_sample_size
                if request.min_sample_size is not None
                else cfg.minimum_sample_size
            ),
            max_duration_seconds=request.max_duration_seconds or cfg.max_duration_seconds,
            stratified=(
                request.stratified if request.stratified is not None else cfg.stratified_sampling
            ),
        )
        self._commit_experiment(experiment)
        logger.info(
            "experiment_created",
            experiment_id=experiment.id,
            name=experiment.name,
            model_a=experiment.model_a.version,
            model_b=experiment.model_b.version,
            split_percentage=experiment.split_percentage,
        )
        return experiment

    def get_experiment(self, experiment_id: str) -> Experiment:
        return self._require(experiment_id)

    def list_experiments(self, status: ExperimentStatus | None = None) -> list[Experiment]:
        experiments = sorted(self._experiments.values(), key=lambda e: e.start_time)
        if status is not None:
            experiments = [e for e in experiments if e.status == status]
        return experiments

    def stop_experiment(self, experiment_id: str) -> Experiment:
        """Force conclusion on the data collected so far."""
        with self._lock_for(experiment_id):
            experiment = self._require(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                raise NotReadyError(
                    f"Experiment {experiment_id} is not running",
                    details={"status": experiment.status.value},
                )
            updated = experiment.model_copy(deep=True)
            self._conclude(updated)
            self._commit_experiment(updated)

        logger.info(
            "experiment_stopped",
            experiment_id=experiment_id,
            significant=updated.results.is_significant if updated.results else False,
        )
        return updated

    def delete_experiment(self, experiment_id: str) -> None:
        """Remove a concluded experiment and all of its assignments."""
        with self._lock_for(experiment_id):
            experiment = self._require(experiment_id)
            if experiment.status == ExperimentStatus.RUNNING:
                raise ConflictError(
                    f"Experiment {experiment_id} is still running; stop it first",
                    details={"experiment_id": experiment_id},
                )
            with self._persist_lock:
                experiments = {k: v for k, v in self._experiments.items() if k != experiment_id}
                assignments = {
                    k: v for k, v in self._assignments.items() if v.experiment_id != experiment_id
                }
                self._repository.save(
                    ASSIGNMENTS, {k: v.model_dump(mode="json") for k, v in assignments.items()}
                )
                self._repository.save(
                    EXPERIMENTS, {k: v.model_dump(mode="json") for k, v in experiments.items()}
                )
                removed = len(self._assignments) - len(assignments)
                self._experiments = experiments
                self._assignments = assignments

        with self._locks_guard:
            self._locks.pop(experiment_id, None)
        logger.info("experiment_deleted", experiment_id=experiment_id, assignments_removed=removed)

    # ------------------------------------------------------------------
    # Assignment & outcomes
    # ------------------------------------------------------------------

    def assign_user_to_group(
        self,
        user_id: str,
        experiment_id: str,
        context: dict[str, Any] | None = None,
    ) -> Group | None:
        """Return the user's group, or None if the experiment is not running.

        A user keeps the first group they were assigned to for the lifetime
        of the experiment.
        """
        context = context or {}
        if experiment_id not in self._experiments:
            logger.debug("assignment_skipped", user_id=user_id, experiment_id=experiment_id)
            return None
        with self._lock_for(experiment_id):
            experiment = self._experiments.get(experiment_id)
            if experiment is None or experiment.status != ExperimentStatus.RUNNING:
                logger.debug(
                    "assignment_skipped", user_id=user_id, experiment_id=experiment_id
                )
                return None

            existing = self._assignments.get(_assignment_key(user_id, experiment_id))
            if existing is not None:
                return existing.group

            now = self._clock.now()
            bucket = _bucket_for(user_id, experiment_id, experiment.stratified, context, now)
            group = Group.A if bucket < experiment.split_percentage else Group.B

            self._commit_assignment(
                Assignment(
                    user_id=user_id,
                    experiment_id=experiment_id,
                    group=group,
                    assigned_at=now,
                    context=context,
                )
            )

        logger.info(
            "user_assigned", user_id=user_id, experiment_id=experiment_id, group=group.value
        )
        return group

    def get_assignment(self, user_id: str, experiment_id: str) -> Assignment | None:
        return self._assignments.get(_assignment_key(user_id, experiment_id))

    def record_outcome(
        self,
        experiment_id: str,
        group: Group | str,
        predicted_label: str,
        actual_label: str | None = None,
        confidence: float = 0.0,
    ) -> Experiment:
        """Aggregate one prediction outcome, then run the conclusion check."""
        try:
            group = Group(group)
        except ValueError as e:
            raise InvalidConfigError(
                f"Invalid group {group!r}; expected 'A' or 'B'", details={"group": str(group)}
            ) from e
        if not 0.0 <= confidence <= 1.0:
            raise InvalidConfigError(f"confidence must be within [0, 1], got {confidence}")

        with self._lock_for(experiment_id):
            experiment = self._require(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                raise NotReadyError(
                    f"Experiment {experiment_id} is not running",
                    details={"status": experiment.status.value},
                )

            updated = experiment.model_copy(deep=True)
            group_metrics = updated.metrics.for_group(group)
            group_metrics.predictions += 1
            group_metrics.total_confidence += confidence
            if actual_label is not None and actual_label == predicted_label:
                group_metrics.correct += 1

            concluded = self._maybe_conclude(updated)
            self._commit_experiment(updated)

        if concluded:
            logger.info(
                "experiment_concluded",
                experiment_id=experiment_id,
                significant=updated.results.is_significant,
                winner=updated.results.winner,
                p_value=updated.results.p_value,
            )
        return updated

    # ------------------------------------------------------------------
    # Conclusion
    # ------------------------------------------------------------------

    def _conclude(self, experiment: Experiment) -> None:
        experiment.results = compute_significance(
            experiment.metrics, self._config.significance_level
        )
        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_time = self._clock.now()

    def _maybe_conclude(self, experiment: Experiment) -> bool:
        """Conclude in place when the volume/time thresholds allow it.

        Past the max duration the experiment concludes even without a
        significant result.
        """
        elapsed = self._elapsed_seconds(experiment)
        sample_reached = (
            experiment.metrics.total_predictions >= experiment.min_sample_size
            and elapsed >= self._config.minimum_evaluation_window_seconds
        )
        expired = elapsed >= experiment.max_duration_seconds
        if not (sample_reached or expired):
            return False

        result = compute_significance(experiment.metrics, self._config.significance_level)
        if not (result.is_significant or expired):
            return False

        experiment.results = result
        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_time = self._clock.now()
        return True

    def check_conclusion(self, experiment_id: str) -> bool:
        """Re-run the conclusion check without recording an outcome."""
        with self._lock_for(experiment_id):
            experiment = self._require(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                return False
            updated = experiment.model_copy(deep=True)
            if not self._maybe_conclude(updated):
                return False
            self._commit_experiment(updated)
        logger.info(
            "experiment_concluded",
            experiment_id=experiment_id,
            significant=updated.results.is_significant,
        )
        return True

    def get_results(self, experiment_id: str) -> ExperimentResults:
        experiment = self._require(experiment_id)
        significance = experiment.results or compute_significance(
            experiment.metrics, self._config.significance_level
        )
        return ExperimentResults(
            experiment_id=experiment.id,
            name=experiment.name,
            status=experiment.status,
            duration_seconds=self._elapsed_seconds(experiment),
            model_a=experiment.model_a,
            model_b=experiment.model_b,
            metrics=experiment.metrics,
            significance=significance,
            total_predictions=experiment.metrics.total_predictions,
            start_time=experiment.start_time,
            end_time=experiment.end_time,
        )
