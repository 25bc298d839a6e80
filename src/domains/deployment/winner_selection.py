"""Winner selection and deployment.

Evaluates a concluded experiment against five ordered gates and, when it
passes (or a manual override is given), deploys the winning model:

1. Back up the currently deployed artifact
2. Apply the configured strategy (replace / canary / blue-green)
3. Verify the result
4. On any failure after the backup, restore it before surfacing the error
5. Append an audit record and emit a notification

Only one deployment may be in flight; a second request is rejected with
ConflictError.
"""

import asyncio
import uuid
from collections.abc import Callable

import structlog

from src.domains.deployment.config import WinnerSelectionConfig
from src.domains.deployment.models import (
    CanaryPromotion,
    CanaryStep,
    DeploymentOutcome,
    DeploymentStats,
    Gate,
    WinnerDeploymentRecord,
    WinnerEvaluation,
)
from src.domains.deployment.routing import RoutingTable
from src.domains.deployment.strategies import (
    DeploymentStrategy,
    StrategyResult,
    build_strategy,
)
from src.domains.deployment.verification import DeploymentVerifier
from src.domains.experiments.models import (
    Experiment,
    ExperimentStatus,
    Group,
    SignificanceResult,
)
from src.domains.experiments.orchestrator import ExperimentOrchestrator
from src.domains.experiments.statistics import compute_significance
from src.domains.versioning.models import BackupInfo, StrategyName, TriggeredBy
from src.domains.versioning.store import ModelVersionStore
from src.shared.clock import Clock
from src.shared.coordination import DEPLOYMENT, OperationCoordinator
from src.shared.errors import (
    DeploymentFailedError,
    InvalidConfigError,
    LifecycleError,
    NotReadyError,
)
from src.shared.repository import (
    WINNER_DEPLOYMENTS,
    WINNER_SELECTION_CONFIG,
    DocumentRepository,
)

logger = structlog.get_logger()

# (version, weight) -> healthy
CanaryHealthCheck = Callable[[str, float], bool]


def evaluate_gates(
    experiment: Experiment,
    significance: SignificanceResult,
    config: WinnerSelectionConfig,
) -> WinnerEvaluation:
    """Apply the promotion gates in order, stopping at the first failure."""
    duration = 0.0
    if experiment.end_time is not None:
        duration = (experiment.end_time - experiment.start_time).total_seconds()
    confidence = 1.0 - significance.p_value
    improvement = significance.improvement or 0.0
    total = experiment.metrics.total_predictions

    winner_model = None
    if significance.winner is not None:
        winner_model = experiment.model_a if significance.winner == Group.A else experiment.model_b

    failures = [
        (Gate.SIGNIFICANCE, not significance.is_significant, "Not statistically significant"),
        (
            Gate.CONFIDENCE,
            confidence < config.minimum_confidence_level,
            "Confidence level too low",
        ),
        (
            Gate.IMPROVEMENT,
            improvement < config.minimum_improvement_threshold,
            "Improvement below threshold",
        ),
        (Gate.SAMPLE_SIZE, total < config.minimum_sample_size, "Sample size too small"),
        (
            Gate.DURATION,
            duration < config.minimum_test_duration_seconds,
            "Test duration too short",
        ),
    ]
    failed = next(((gate, reason) for gate, failing, reason in failures if failing), None)

    return WinnerEvaluation(
        experiment_id=experiment.id,
        can_deploy=failed is None,
        reason=failed[1] if failed else "All deployment criteria met",
        failed_gate=failed[0] if failed else None,
        winner=significance.winner,
        winner_model=winner_model,
        confidence=confidence,
        improvement=improvement,
        p_value=significance.p_value,
        total_predictions=total,
        duration_seconds=duration,
    )


class WinnerSelectionService:
    def __init__(
        self,
        orchestrator: ExperimentOrchestrator,
        store: ModelVersionStore,
        routing: RoutingTable,
        coordinator: OperationCoordinator,
        repository: DocumentRepository,
        clock: Clock,
        config: WinnerSelectionConfig | None = None,
        verifier: DeploymentVerifier | None = None,
        canary_health_check: CanaryHealthCheck | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._routing = routing
        self._coordinator = coordinator
        self._repository = repository
        self._clock = clock
        self._verifier = verifier or DeploymentVerifier(store)
        self._canary_health_check = canary_health_check or self._verify_canary

        stored_config = repository.load(WINNER_SELECTION_CONFIG)
        self._config = (
            WinnerSelectionConfig.from_dict(stored_config)
            if stored_config
            else config or WinnerSelectionConfig()
        )
        self._records: list[WinnerDeploymentRecord] = [
            WinnerDeploymentRecord.model_validate(r)
            for r in repository.load(WINNER_DEPLOYMENTS) or []
        ]

    @property
    def config(self) -> WinnerSelectionConfig:
        return self._config

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, experiment_id: str) -> WinnerEvaluation:
        experiment = self._orchestrator.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.COMPLETED:
            raise NotReadyError(
                f"Experiment {experiment_id} has not concluded",
                details={"status": experiment.status.value},
            )
        significance = experiment.results or compute_significance(experiment.metrics)
        evaluation = evaluate_gates(experiment, significance, self._config)
        logger.info(
            "winner_evaluated",
            experiment_id=experiment_id,
            can_deploy=evaluation.can_deploy,
            reason=evaluation.reason,
            winner=evaluation.winner,
        )
        return evaluation

    async def auto_deploy_winner(self, experiment_id: str) -> DeploymentOutcome:
        if not self._config.auto_deploy_enabled:
            logger.info("auto_deploy_skipped", experiment_id=experiment_id, reason="disabled")
            return DeploymentOutcome(deployed=False, reason="disabled", experiment_id=experiment_id)

        evaluation = self.evaluate(experiment_id)
        if not evaluation.can_deploy:
            return DeploymentOutcome(
                deployed=False,
                reason=evaluation.reason,
                experiment_id=experiment_id,
                evaluation=evaluation,
            )
        return await self.execute_deployment(experiment_id, evaluation, TriggeredBy.AUTO)

    async def manual_deploy_winner(
        self, experiment_id: str, force_override: bool = False
    ) -> DeploymentOutcome:
        """Deploy the winner, optionally bypassing failed gates.

        The override is kept in the audit record.
        """
        evaluation = self.evaluate(experiment_id)
        if not evaluation.can_deploy and not force_override:
            raise NotReadyError(
                f"Deployment criteria not met: {evaluation.reason}",
                details={"evaluation": evaluation.model_dump(mode="json")},
            )
        if not evaluation.can_deploy:
            logger.warning(
                "deployment_gates_overridden",
                experiment_id=experiment_id,
                reason=evaluation.reason,
            )
        return await self.execute_deployment(
            experiment_id, evaluation, TriggeredBy.MANUAL, force_override=force_override
        )

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    async def execute_deployment(
        self,
        experiment_id: str,
        evaluation: WinnerEvaluation,
        triggered_by: TriggeredBy = TriggeredBy.AUTO,
        force_override: bool = False,
    ) -> DeploymentOutcome:
        if evaluation.winner_model is None:
            raise NotReadyError(
                f"Experiment {experiment_id} has no winner to deploy",
                details={"reason": evaluation.reason},
            )
        version = evaluation.winner_model.version
        self._store.get_version(version)
        strategy = build_strategy(
            self._config.deployment_strategy, self._store, self._routing, self._config
        )

        with self._coordinator.exclusive(DEPLOYMENT, f"winner:{experiment_id}"):
            previous = self._store.current_version
            backup = self._store.create_backup(previous, f"pre_winner_{experiment_id}")
            logger.info(
                "winner_deployment_started",
                experiment_id=experiment_id,
                version=version,
                previous_version=previous,
                strategy=strategy.name.value,
            )

            result: StrategyResult | None = None
            try:
                result = strategy.apply(version, experiment_id, triggered_by)
                verification = self._verifier.verify(result)
            except Exception as e:
                logger.error(
                    "winner_deployment_failed",
                    experiment_id=experiment_id,
                    version=version,
                    error=str(e),
                )
                rollback_outcome = self._recover(strategy, result, backup, experiment_id)
                outcome = DeploymentOutcome(
                    deployed=False,
                    reason=str(e),
                    experiment_id=experiment_id,
                    version=version,
                    previous_version=previous,
                    strategy=strategy.name,
                    deployment_id=result.deployment_id if result else None,
                    backup_path=backup.path,
                    rolled_back=rollback_outcome == "restored",
                    rollback_outcome=rollback_outcome,
                    evaluation=evaluation,
                )
                self._finish(outcome, triggered_by, force_override)
                raise DeploymentFailedError(
                    f"Deployment of {version} failed: {e}",
                    details=self._failure_details(outcome),
                ) from e

            if not verification.passed:
                rollback_outcome = self._recover(strategy, result, backup, experiment_id)
                outcome = DeploymentOutcome(
                    deployed=False,
                    reason=f"Verification failed: {', '.join(verification.failed_checks)}",
                    experiment_id=experiment_id,
                    version=version,
                    previous_version=previous,
                    strategy=strategy.name,
                    deployment_id=result.deployment_id,
                    backup_path=backup.path,
                    verification=verification,
                    rolled_back=rollback_outcome == "restored",
                    rollback_outcome=rollback_outcome,
                    evaluation=evaluation,
                )
                self._finish(outcome, triggered_by, force_override)
                raise DeploymentFailedError(outcome.reason, details=self._failure_details(outcome))

            outcome = DeploymentOutcome(
                deployed=True,
                reason="deployed",
                experiment_id=experiment_id,
                version=version,
                previous_version=previous,
                strategy=strategy.name,
                deployment_id=result.deployment_id,
                backup_path=backup.path,
                verification=verification,
                canary_weight=result.canary_weight,
                evaluation=evaluation,
            )
            self._finish(outcome, triggered_by, force_override)
        return outcome

    @staticmethod
    def _failure_details(outcome: DeploymentOutcome) -> dict:
        return {
            "experiment_id": outcome.experiment_id,
            "version": outcome.version,
            "rolled_back": outcome.rolled_back,
            "rollback": outcome.rollback_outcome,
            "verification": (
                outcome.verification.model_dump(mode="json") if outcome.verification else None
            ),
        }

    def _recover(
        self,
        strategy: DeploymentStrategy,
        result: StrategyResult | None,
        backup: BackupInfo,
        experiment_id: str,
    ) -> str:
        """Undo the strategy and restore the backup. Never raises."""
        if not self._config.rollback_on_failure:
            logger.warning("rollback_skipped", experiment_id=experiment_id, reason="disabled")
            return "disabled"
        try:
            if result is not None:
                strategy.revert(result)
            self._store.restore_from_backup(
                backup.path,
                reason=f"winner_deployment_failed:{experiment_id}",
                deployment_id=result.deployment_id if result else None,
            )
        except (LifecycleError, OSError) as e:
            logger.error("rollback_failed", experiment_id=experiment_id, error=str(e))
            return "failed"
        logger.info("deployment_rolled_back", experiment_id=experiment_id, backup=backup.path)
        return "restored"

    def _finish(
        self, outcome: DeploymentOutcome, triggered_by: TriggeredBy, force_override: bool
    ) -> None:
        record = WinnerDeploymentRecord(
            id=f"wd_{uuid.uuid4().hex[:12]}",
            experiment_id=outcome.experiment_id or "",
            evaluation=outcome.evaluation,
            outcome=outcome,
            triggered_by=triggered_by,
            force_override=force_override,
            strategy=outcome.strategy or StrategyName(self._config.deployment_strategy),
            recorded_at=self._clock.now(),
            success=outcome.deployed,
        )
        candidate = [*self._records, record]
        self._repository.save(WINNER_DEPLOYMENTS, [r.model_dump(mode="json") for r in candidate])
        self._records = candidate

        if self._config.notification_enabled:
            logger.info(
                "deployment_notification",
                experiment_id=outcome.experiment_id,
                version=outcome.version,
                deployed=outcome.deployed,
                reason=outcome.reason,
                rollback=outcome.rollback_outcome,
                triggered_by=triggered_by.value,
            )

    # ------------------------------------------------------------------
    # Canary promotion
    # ------------------------------------------------------------------

    def _verify_canary(self, version: str, weight: float) -> bool:
        result = StrategyResult(
            strategy=StrategyName.CANARY,
            version=version,
            artifact_path=self._store.version_path(version),
            canary_weight=weight,
        )
        return self._verifier.verify(result).passed

    async def promote_canary(self, experiment_id: str) -> CanaryPromotion:
        """Ramp the canary through the configured steps, then make it current.

        Halts at the first unhealthy step, leaving the last healthy weight.
        """
        state = self._routing.state
        if state.canary_experiment_id != experiment_id or state.canary_version is None:
            raise NotReadyError(
                f"No active canary for experiment {experiment_id}",
                details={"canary_experiment_id": state.canary_experiment_id},
            )
        version = state.canary_version

        with self._coordinator.exclusive(DEPLOYMENT, f"canary:{experiment_id}"):
            last_healthy = state.canary_weight
            steps: list[CanaryStep] = []
            for weight in self._config.canary_steps:
                if weight <= last_healthy:
                    continue
                self._routing.update(canary_weight=weight)
                healthy = self._canary_health_check(version, weight)
                steps.append(CanaryStep(weight=weight, healthy=healthy))
                if not healthy:
                    self._routing.update(canary_weight=last_healthy)
                    logger.warning(
                        "canary_promotion_halted",
                        experiment_id=experiment_id,
                        version=version,
                        weight=weight,
                        last_healthy=last_healthy,
                    )
                    return CanaryPromotion(
                        experiment_id=experiment_id,
                        promoted=False,
                        reason=f"Health check failed at {weight:g}% traffic",
                        final_weight=last_healthy,
                        version=version,
                        steps=steps,
                    )
                last_healthy = weight
                logger.info("canary_step_healthy", experiment_id=experiment_id, weight=weight)
                if self._config.canary_step_delay_seconds > 0 and weight < 100:
                    await asyncio.sleep(self._config.canary_step_delay_seconds)

            self._store.deploy_version(
                version, strategy=StrategyName.CANARY, triggered_by=TriggeredBy.AUTO
            )
            self._routing.clear_canary()

        logger.info("canary_promoted", experiment_id=experiment_id, version=version)
        return CanaryPromotion(
            experiment_id=experiment_id,
            promoted=True,
            reason="promoted",
            final_weight=100.0,
            version=version,
            steps=steps,
        )

    # ------------------------------------------------------------------
    # Reporting & config
    # ------------------------------------------------------------------

    def deployment_history(self, limit: int | None = None) -> list[WinnerDeploymentRecord]:
        records = list(self._records)
        return records[-limit:] if limit else records

    def deployment_stats(self) -> DeploymentStats:
        total = len(self._records)
        successful = [r for r in self._records if r.success]
        automatic = sum(1 for r in self._records if r.triggered_by == TriggeredBy.AUTO)
        improvements = [
            r.evaluation.improvement for r in successful if r.evaluation.improvement is not None
        ]
        return DeploymentStats(
            total=total,
            successful=len(successful),
            automatic=automatic,
            manual=total - automatic,
            success_rate=(len(successful) / total * 100) if total else 0.0,
            average_improvement=(sum(improvements) / len(improvements)) if improvements else 0.0,
        )

    def update_config(self, updates: dict) -> WinnerSelectionConfig:
        try:
            candidate = self._config.updated(updates)
        except (TypeError, ValueError) as e:
            raise InvalidConfigError(str(e), details={"updates": updates}) from e
        self._repository.save(WINNER_SELECTION_CONFIG, candidate.to_dict())
        self._config = candidate
        logger.info("winner_selection_config_updated", keys=sorted(updates))
        return candidate
