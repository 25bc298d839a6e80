"""Tests for the retraining pipeline."""

import pytest

from src.domains.retraining.pipeline import RetrainingPipeline
from src.domains.versioning.models import ChangeType, TriggeredBy
from src.shared.capabilities import TrainingProgress
from src.shared.coordination import DEPLOYMENT
from src.shared.errors import ConflictError, RetrainingFailedError
from tests.conftest import FakeDatasetPreparer, FakeTrainer, read_tree

RETRAINED_FILES = {"model.json": b'{"retrained": true}'}


class ResultlessTrainer:
    async def retrain(self, dataset_ref, hyperparams):
        yield TrainingProgress(epoch=1, total_epochs=1, accuracy=0.5, loss=1.0)


@pytest.fixture
def preparer():
    return FakeDatasetPreparer()


@pytest.fixture
def make_pipeline(request, preparer, coordinator, tmp_path):
    def _make(store=None, trainer=None, **trainer_kwargs):
        trainer = trainer or FakeTrainer(tmp_path / "trained", **trainer_kwargs)
        pipeline = RetrainingPipeline(
            store or request.getfixturevalue("seeded_store"), preparer, trainer, coordinator, {"epochs": 3, "lr": 0.001}
        )
        return pipeline, trainer

    return _make


class TestRetrainingPipeline:
    @pytest.mark.asyncio
    async def test_large_improvement_is_minor_release(self, make_pipeline, seeded_store):
        pipeline, _ = make_pipeline(accuracy=0.95)
        outcome = await pipeline.run(reason="ACCURACY_DROP")

        assert outcome.deployed
        assert outcome.version == "1.1.0"
        assert outcome.baseline_accuracy == pytest.approx(0.85)
        assert outcome.improvement == pytest.approx(0.10)
        assert outcome.epochs == 3
        assert seeded_store.current_version == "1.1.0"
        assert read_tree(seeded_store.active_path) == RETRAINED_FILES

        version = seeded_store.get_version("1.1.0")
        assert version.change_type == ChangeType.MINOR
        assert version.retraining_reason == "ACCURACY_DROP"
        assert version.performance.accuracy == pytest.approx(0.95)
        assert version.training_metrics["class_counts"] == {"dog": 30, "cat": 30}

    @pytest.mark.asyncio
    async def test_small_improvement_is_patch_release(self, make_pipeline, seeded_store):
        pipeline, _ = make_pipeline(accuracy=0.88)
        outcome = await pipeline.run()
        assert outcome.version == "1.0.3"
        assert seeded_store.get_version("1.0.3").change_type == ChangeType.PATCH

    @pytest.mark.asyncio
    async def test_regression_is_not_deployed(self, make_pipeline, seeded_store):
        pipeline, _ = make_pipeline(accuracy=0.70)
        outcome = await pipeline.run()

        assert not outcome.deployed
        assert "regresses" in outcome.reason
        assert outcome.version is None
        assert seeded_store.current_version == "1.0.1"
        assert [v.version for v in seeded_store.list_versions()] == ["1.0.2", "1.0.1"]

    @pytest.mark.asyncio
    async def test_slight_regression_still_deploys(self, make_pipeline, seeded_store):
        pipeline, _ = make_pipeline(accuracy=0.83)
        outcome = await pipeline.run()
        assert outcome.deployed
        assert outcome.improvement == pytest.approx(-0.02)

    @pytest.mark.asyncio
    async def test_first_model_without_baseline(self, make_pipeline, store):
        pipeline, _ = make_pipeline(store=store, accuracy=0.6)
        outcome = await pipeline.run(triggered_by=TriggeredBy.MANUAL)

        assert outcome.deployed
        assert outcome.baseline_accuracy is None
        assert outcome.improvement is None
        assert store.current_version == "1.0.1"
        assert store.deployment_history()[-1].triggered_by == TriggeredBy.MANUAL

    @pytest.mark.asyncio
    async def test_options_reach_preparer_and_trainer(self, make_pipeline, preparer):
        pipeline, trainer = make_pipeline()
        await pipeline.run({"dataset": {"balance": True}, "hyperparams": {"lr": 0.01}})
        assert preparer.calls == [{"balance": True}]
        assert trainer.hyperparams == {"epochs": 3, "lr": 0.01}

    @pytest.mark.asyncio
    async def test_missing_result_fails(self, make_pipeline, seeded_store):
        pipeline, _ = make_pipeline(trainer=ResultlessTrainer())
        with pytest.raises(RetrainingFailedError) as exc_info:
            await pipeline.run()
        assert exc_info.value.details["epochs_seen"] == 1
        assert seeded_store.current_version == "1.0.1"

    @pytest.mark.asyncio
    async def test_trainer_error_propagates(self, make_pipeline):
        pipeline, _ = make_pipeline(error=RuntimeError("dataset corrupted"))
        with pytest.raises(RuntimeError, match="dataset corrupted"):
            await pipeline.run()

    @pytest.mark.asyncio
    async def test_deployment_in_progress_conflicts(self, make_pipeline, coordinator, seeded_store):
        pipeline, _ = make_pipeline(accuracy=0.9)
        coordinator.acquire(DEPLOYMENT, "winner:exp_1")
        with pytest.raises(ConflictError):
            await pipeline.run()
        assert seeded_store.current_version == "1.0.1"
