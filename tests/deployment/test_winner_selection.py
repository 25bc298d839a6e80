"""Tests for winner selection gates and winner deployment."""

from datetime import UTC, datetime, timedelta

import pytest

from src.domains.deployment.config import WinnerSelectionConfig
from src.domains.deployment.models import Gate, Slot
from src.domains.deployment.routing import RoutingTable
from src.domains.deployment.verification import DeploymentVerifier
from src.domains.deployment.winner_selection import WinnerSelectionService, evaluate_gates
from src.domains.experiments.models import (
    Experiment,
    ExperimentMetrics,
    ExperimentStatus,
    Group,
    GroupMetrics,
    ModelRef,
    SignificanceResult,
)
from src.domains.versioning.models import StrategyName, TriggeredBy
from src.shared.coordination import DEPLOYMENT
from src.shared.errors import (
    ConflictError,
    DeploymentFailedError,
    InvalidConfigError,
    NotFoundError,
    NotReadyError,
)
from src.shared.repository import WINNER_DEPLOYMENTS
from tests.conftest import V1_FILES, V2_FILES, FakeClassifier, read_tree


def _record(orchestrator, experiment_id, group, correct, wrong):
    for _ in range(correct):
        orchestrator.record_outcome(experiment_id, group, "dog", "dog", 0.9)
    for _ in range(wrong):
        orchestrator.record_outcome(experiment_id, group, "dog", "cat", 0.6)


@pytest.fixture
def routing(repository, clock):
    return RoutingTable(repository, clock)


@pytest.fixture
def completed_experiment(orchestrator, seeded_store, clock):
    """1.0.1 (A) at 50% vs 1.0.2 (B) at 80% over 200 predictions and 25 hours."""
    experiment = orchestrator.create_experiment(
        {
            "name": "candidate-vs-baseline",
            "model_a": {"version": "1.0.1"},
            "model_b": {"version": "1.0.2"},
            "min_sample_size": 10_000,
        }
    )
    _record(orchestrator, experiment.id, "A", 50, 50)
    _record(orchestrator, experiment.id, "B", 80, 20)
    clock.advance(hours=25)
    return orchestrator.stop_experiment(experiment.id)


@pytest.fixture
def make_service(orchestrator, seeded_store, routing, coordinator, repository, clock):
    def _make(classifier=None, canary_health_check=None, **config):
        return WinnerSelectionService(
            orchestrator,
            seeded_store,
            routing,
            coordinator,
            repository,
            clock,
            config=WinnerSelectionConfig(**config),
            verifier=DeploymentVerifier(seeded_store, classifier),
            canary_health_check=canary_health_check,
        )

    return _make


GATE_START = datetime(2026, 1, 1, tzinfo=UTC)


def _experiment(duration_hours=48, predictions=(100, 100)) -> Experiment:
    start = GATE_START
    return Experiment(
        id="exp_gates",
        name="gates",
        model_a=ModelRef(version="1.0.1"),
        model_b=ModelRef(version="1.0.2"),
        split_percentage=50,
        start_time=start,
        end_time=start + timedelta(hours=duration_hours),
        status=ExperimentStatus.COMPLETED,
        min_sample_size=0,
        max_duration_seconds=7 * 24 * 3600,
        metrics=ExperimentMetrics(
            group_a=GroupMetrics(predictions=predictions[0]),
            group_b=GroupMetrics(predictions=predictions[1]),
        ),
    )


def _significance(p_value=0.001, improvement=12.0, significant=True) -> SignificanceResult:
    return SignificanceResult(
        is_significant=significant,
        p_value=p_value,
        winner=Group.B,
        improvement=improvement,
    )


class TestEvaluateGates:
    def test_all_gates_pass(self):
        evaluation = evaluate_gates(_experiment(), _significance(), WinnerSelectionConfig())
        assert evaluation.can_deploy
        assert evaluation.reason == "All deployment criteria met"
        assert evaluation.winner_model.version == "1.0.2"
        assert evaluation.confidence == pytest.approx(0.999)
        assert evaluation.duration_seconds == 48 * 3600

    @pytest.mark.parametrize(
        "experiment,significance,gate,reason",
        [
            (_experiment(), _significance(significant=False), Gate.SIGNIFICANCE,
             "Not statistically significant"),
            (_experiment(), _significance(p_value=0.08), Gate.CONFIDENCE,
             "Confidence level too low"),
            (_experiment(), _significance(improvement=2.0), Gate.IMPROVEMENT,
             "Improvement below threshold"),
            (_experiment(predictions=(30, 30)), _significance(), Gate.SAMPLE_SIZE,
             "Sample size too small"),
            (_experiment(duration_hours=5), _significance(), Gate.DURATION,
             "Test duration too short"),
        ],
    )
    def test_single_gate_failure(self, experiment, significance, gate, reason):
        evaluation = evaluate_gates(experiment, significance, WinnerSelectionConfig())
        assert not evaluation.can_deploy
        assert evaluation.failed_gate == gate
        assert evaluation.reason == reason

    def test_first_failing_gate_wins(self):
        evaluation = evaluate_gates(
            _experiment(duration_hours=1, predictions=(5, 5)),
            _significance(significant=False, p_value=0.4, improvement=1.0),
            WinnerSelectionConfig(),
        )
        assert evaluation.failed_gate == Gate.SIGNIFICANCE


class TestEvaluate:
    def test_running_experiment_not_ready(self, make_service, orchestrator):
        experiment = orchestrator.create_experiment(
            {"name": "x", "model_a": {"version": "1.0.1"}, "model_b": {"version": "1.0.2"}}
        )
        with pytest.raises(NotReadyError):
            make_service().evaluate(experiment.id)

    def test_unknown_experiment(self, make_service):
        with pytest.raises(NotFoundError):
            make_service().evaluate("exp_missing")

    def test_completed_experiment_passes(self, make_service, completed_experiment):
        evaluation = make_service().evaluate(completed_experiment.id)
        assert evaluation.can_deploy
        assert evaluation.winner == Group.B
        assert evaluation.improvement == pytest.approx(30.0)
        assert evaluation.total_predictions == 200

    def test_forced_insignificant_conclusion_never_deploys(
        self, make_service, orchestrator, clock
    ):
        experiment = orchestrator.create_experiment(
            {"name": "flat", "model_a": {"version": "1.0.1"}, "model_b": {"version": "1.0.2"}}
        )
        _record(orchestrator, experiment.id, "A", 40, 60)
        _record(orchestrator, experiment.id, "B", 41, 59)
        clock.advance(days=8)
        assert orchestrator.check_conclusion(experiment.id)

        evaluation = make_service().evaluate(experiment.id)
        assert not evaluation.can_deploy
        assert evaluation.failed_gate == Gate.SIGNIFICANCE


class TestAutoDeploy:
    @pytest.mark.asyncio
    async def test_deploys_winner(self, make_service, completed_experiment, seeded_store):
        service = make_service(classifier=FakeClassifier())
        outcome = await service.auto_deploy_winner(completed_experiment.id)

        assert outcome.deployed
        assert outcome.version == "1.0.2"
        assert outcome.previous_version == "1.0.1"
        assert outcome.verification.passed
        assert "latency_p95_ms" in outcome.verification.details
        assert seeded_store.current_version == "1.0.2"
        assert read_tree(seeded_store.active_path) == V2_FILES

        history = service.deployment_history()
        assert len(history) == 1
        assert history[0].triggered_by == TriggeredBy.AUTO
        assert history[0].success
        stats = service.deployment_stats()
        assert stats.success_rate == 100.0
        assert stats.automatic == 1
        assert stats.average_improvement == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_backup_taken_before_deploying(self, make_service, completed_experiment, seeded_store):
        outcome = await make_service().auto_deploy_winner(completed_experiment.id)
        backup = next(b for b in seeded_store.list_backups() if b.path == outcome.backup_path)
        assert backup.version == "1.0.1"
        assert backup.reason == f"pre_winner_{completed_experiment.id}"

    @pytest.mark.asyncio
    async def test_disabled(self, make_service, completed_experiment, seeded_store):
        outcome = await make_service(auto_deploy_enabled=False).auto_deploy_winner(
            completed_experiment.id
        )
        assert not outcome.deployed
        assert outcome.reason == "disabled"
        assert seeded_store.current_version == "1.0.1"

    @pytest.mark.asyncio
    async def test_gate_failure_is_reported(self, make_service, completed_experiment, seeded_store):
        service = make_service(minimum_improvement_threshold=40.0)
        outcome = await service.auto_deploy_winner(completed_experiment.id)
        assert not outcome.deployed
        assert outcome.reason == "Improvement below threshold"
        assert seeded_store.current_version == "1.0.1"
        assert service.deployment_history() == []


class TestManualDeploy:
    @pytest.mark.asyncio
    async def test_refuses_without_override(self, make_service, completed_experiment):
        service = make_service(minimum_sample_size=1000)
        with pytest.raises(NotReadyError) as exc_info:
            await service.manual_deploy_winner(completed_experiment.id)
        assert exc_info.value.details["evaluation"]["failed_gate"] == "sample_size"

    @pytest.mark.asyncio
    async def test_override_is_audited(self, make_service, completed_experiment, seeded_store):
        service = make_service(minimum_sample_size=1000)
        outcome = await service.manual_deploy_winner(completed_experiment.id, force_override=True)
        assert outcome.deployed
        assert seeded_store.current_version == "1.0.2"
        record = service.deployment_history()[-1]
        assert record.force_override
        assert record.triggered_by == TriggeredBy.MANUAL
        assert not record.evaluation.can_deploy


class TestDeploymentFailure:
    @pytest.mark.asyncio
    async def test_failed_verification_restores_artifact(
        self, make_service, completed_experiment, seeded_store, repository
    ):
        before = read_tree(seeded_store.active_path)
        service = make_service(classifier=FakeClassifier(label="bird"))

        with pytest.raises(DeploymentFailedError) as exc_info:
            await service.auto_deploy_winner(completed_experiment.id)

        details = exc_info.value.details
        assert details["rolled_back"] is True
        assert details["rollback"] == "restored"
        assert details["verification"]["passed"] is False
        assert read_tree(seeded_store.active_path) == before == V1_FILES
        assert seeded_store.current_version == "1.0.1"
        assert seeded_store.deployed_version().version == "1.0.1"

        stored = repository.load(WINNER_DEPLOYMENTS)
        assert len(stored) == 1
        assert stored[0]["success"] is False

    @pytest.mark.asyncio
    async def test_classifier_error_fails_verification(
        self, make_service, completed_experiment, seeded_store
    ):
        service = make_service(classifier=FakeClassifier(error=RuntimeError("CUDA out of memory")))
        with pytest.raises(DeploymentFailedError):
            await service.auto_deploy_winner(completed_experiment.id)
        assert seeded_store.current_version == "1.0.1"

    @pytest.mark.asyncio
    async def test_rollback_disabled_leaves_deployment(
        self, make_service, completed_experiment, seeded_store
    ):
        service = make_service(classifier=FakeClassifier(confidence=1.5), rollback_on_failure=False)
        with pytest.raises(DeploymentFailedError) as exc_info:
            await service.auto_deploy_winner(completed_experiment.id)
        assert exc_info.value.details["rollback"] == "disabled"
        assert exc_info.value.details["rolled_back"] is False
        assert seeded_store.current_version == "1.0.2"

    @pytest.mark.asyncio
    async def test_concurrent_deployment_conflicts(
        self, make_service, completed_experiment, seeded_store, coordinator
    ):
        service = make_service()
        coordinator.acquire(DEPLOYMENT, "another-deployment")
        with pytest.raises(ConflictError):
            await service.auto_deploy_winner(completed_experiment.id)
        assert seeded_store.current_version == "1.0.1"
        assert service.deployment_history() == []

    @pytest.mark.asyncio
    async def test_slot_released_after_failure(
        self, make_service, completed_experiment, coordinator
    ):
        with pytest.raises(DeploymentFailedError):
            await make_service(classifier=FakeClassifier(label="bird")).auto_deploy_winner(
                completed_experiment.id
            )
        assert not coordinator.deployment_in_progress


class TestCanary:
    @pytest.mark.asyncio
    async def test_canary_declares_weight_only(
        self, make_service, completed_experiment, seeded_store, routing
    ):
        outcome = await make_service(deployment_strategy="canary").auto_deploy_winner(
            completed_experiment.id
        )
        assert outcome.deployed
        assert outcome.strategy == StrategyName.CANARY
        assert outcome.canary_weight == 10.0
        assert seeded_store.current_version == "1.0.1"
        state = routing.state
        assert state.canary_version == "1.0.2"
        assert state.canary_experiment_id == completed_experiment.id

    @pytest.mark.asyncio
    async def test_promotion_ramps_to_full_traffic(
        self, make_service, completed_experiment, seeded_store, routing
    ):
        service = make_service(deployment_strategy="canary")
        await service.auto_deploy_winner(completed_experiment.id)

        promotion = await service.promote_canary(completed_experiment.id)

        assert promotion.promoted
        assert [s.weight for s in promotion.steps] == [25.0, 50.0, 75.0, 100.0]
        assert seeded_store.current_version == "1.0.2"
        assert read_tree(seeded_store.active_path) == V2_FILES
        assert routing.state.canary_version is None

    @pytest.mark.asyncio
    async def test_promotion_halts_at_unhealthy_step(
        self, make_service, completed_experiment, seeded_store, routing
    ):
        service = make_service(
            deployment_strategy="canary",
            canary_health_check=lambda version, weight: weight < 75,
        )
        await service.auto_deploy_winner(completed_experiment.id)

        promotion = await service.promote_canary(completed_experiment.id)

        assert not promotion.promoted
        assert promotion.final_weight == 50.0
        assert promotion.steps[-1].healthy is False
        assert routing.state.canary_weight == 50.0
        assert seeded_store.current_version == "1.0.1"

    @pytest.mark.asyncio
    async def test_promotion_requires_active_canary(self, make_service, completed_experiment):
        with pytest.raises(NotReadyError):
            await make_service().promote_canary(completed_experiment.id)

    @pytest.mark.asyncio
    async def test_failed_canary_verification_clears_routing(
        self, make_service, completed_experiment, seeded_store, routing
    ):
        service = make_service(deployment_strategy="canary", classifier=FakeClassifier(label="bird"))
        with pytest.raises(DeploymentFailedError):
            await service.auto_deploy_winner(completed_experiment.id)
        assert routing.state.canary_version is None
        assert seeded_store.current_version == "1.0.1"
        assert read_tree(seeded_store.active_path) == V1_FILES


class TestBlueGreen:
    @pytest.mark.asyncio
    async def test_flips_to_idle_slot(self, make_service, completed_experiment, seeded_store, routing):
        outcome = await make_service(deployment_strategy="blue-green").auto_deploy_winner(
            completed_experiment.id
        )
        assert outcome.deployed
        state = routing.state
        assert state.active_slot == Slot.GREEN
        assert state.slots["green"] == "1.0.2"
        assert read_tree(seeded_store.models_dir / "slots" / "green") == V2_FILES
        assert seeded_store.current_version == "1.0.2"

    @pytest.mark.asyncio
    async def test_failure_flips_back(self, make_service, completed_experiment, seeded_store, routing):
        service = make_service(deployment_strategy="blue-green", classifier=FakeClassifier(label="bird"))
        with pytest.raises(DeploymentFailedError):
            await service.auto_deploy_winner(completed_experiment.id)
        assert routing.state.active_slot == Slot.BLUE
        assert seeded_store.current_version == "1.0.1"


class TestConfig:
    def test_update_persists(self, make_service, orchestrator, seeded_store, routing, coordinator,
                             repository, clock):
        service = make_service()
        updated = service.update_config({"minimum_improvement_threshold": 10.0})
        assert updated.minimum_improvement_threshold == 10.0

        reloaded = WinnerSelectionService(
            orchestrator, seeded_store, routing, coordinator, repository, clock
        )
        assert reloaded.config.minimum_improvement_threshold == 10.0

    @pytest.mark.parametrize(
        "updates",
        [
            {"no_such_key": 1},
            {"deployment_strategy": "yolo"},
            {"canary_steps": [50.0, 25.0, 100.0]},
        ],
    )
    def test_invalid_updates_rejected(self, make_service, updates):
        service = make_service()
        with pytest.raises(InvalidConfigError):
            service.update_config(updates)
        assert service.config == WinnerSelectionConfig()
