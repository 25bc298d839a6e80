"""End-to-end tests of the HTTP API against in-memory state."""

import pytest
from httpx import ASGITransport, AsyncClient

from src.config import Settings
from src.container import build_container
from src.domains.deployment.config import WinnerSelectionConfig
from src.domains.retraining.config import SchedulerConfig
from src.main import app
from src.shared.clock import FakeClock
from src.shared.coordination import RETRAINING
from src.shared.repository import InMemoryRepository
from tests.conftest import (
    V1_FILES,
    V2_FILES,
    FakeClassifier,
    FakeDatasetPreparer,
    FakeTrainer,
    read_tree,
    write_artifact,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def container(tmp_path):
    clock = FakeClock()
    container = build_container(
        Settings(storage_dir=str(tmp_path), scheduler_autostart=False, json_logs=False),
        repository=InMemoryRepository(),
        clock=clock,
        models_dir=tmp_path / "models",
        classifier=FakeClassifier(),
        trainer=FakeTrainer(tmp_path / "trained", accuracy=0.88),
        preparer=FakeDatasetPreparer(),
        winner_config=WinnerSelectionConfig(),
        scheduler_config=SchedulerConfig(),
    )
    store = container.store
    write_artifact(store.active_path, V1_FILES)
    store.create_version({"description": "baseline", "performance": {"accuracy": 0.85}})
    store.deploy_version("1.0.1")
    clock.advance(hours=1)
    store.register_artifact(
        write_artifact(tmp_path / "incoming", V2_FILES),
        {"description": "candidate", "performance": {"accuracy": 0.9}},
    )

    app.state.container = container
    yield container
    app.state.container = None


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _create_experiment(client, **overrides) -> str:
    response = await client.post(
        "/api/v1/experiments",
        json={
            "name": "baseline-vs-candidate",
            "model_a": {"version": "1.0.1"},
            "model_b": {"version": "1.0.2"},
            "min_sample_size": 10_000,
            **overrides,
        },
    )
    assert response.status_code == 201
    return response.json()["experiment_id"]


async def _record(client, experiment_id, group, correct, wrong):
    for i in range(correct + wrong):
        response = await client.post(
            f"/api/v1/experiments/{experiment_id}/outcomes",
            json={
                "user_id": f"{group}-{i}",
                "group": group,
                "predicted_label": "dog",
                "actual_label": "dog" if i < correct else "cat",
                "confidence": 0.9,
            },
        )
        assert response.status_code == 200


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, container):
        async with _client() as client:
            response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_ready(self, container):
        async with _client() as client:
            response = await client.get("/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["current_version"] == "1.0.1"
        assert data["deployment_in_progress"] is False


class TestExperimentsApi:
    @pytest.mark.asyncio
    async def test_full_experiment_to_deployment(self, container):
        async with _client() as client:
            experiment_id = await _create_experiment(client)

            assigned = await client.post(
                f"/api/v1/experiments/{experiment_id}/assign",
                json={"user_id": "user-1", "context": {"user_agent": "Mozilla/5.0"}},
            )
            assert assigned.json()["group"] in ("A", "B")

            await _record(client, experiment_id, "A", 20, 30)
            await _record(client, experiment_id, "B", 45, 5)
            container.clock.advance(hours=25)

            stopped = await client.post(f"/api/v1/experiments/{experiment_id}/stop")
            assert stopped.json()["status"] == "completed"

            details = await client.get(f"/api/v1/experiments/{experiment_id}")
            assert details.json()["significance"]["winner"] == "B"

            evaluation = await client.get(f"/api/v1/winner-selection/{experiment_id}/evaluate")
            assert evaluation.json()["can_deploy"] is True

            deployed = await client.post(f"/api/v1/winner-selection/{experiment_id}/auto-deploy")
            assert deployed.status_code == 200
            assert deployed.json()["deployed"] is True
            assert deployed.json()["version"] == "1.0.2"

            history = await client.get("/api/v1/winner-selection/deployment-history")
            assert history.json()["count"] == 1
            stats = await client.get("/api/v1/winner-selection/stats")
            assert stats.json()["success_rate"] == 100.0

        assert container.store.current_version == "1.0.2"
        assert read_tree(container.store.active_path) == V2_FILES

    @pytest.mark.asyncio
    async def test_error_responses(self, container):
        async with _client() as client:
            missing = await client.get(
                "/api/v1/experiments/exp_missing", headers={"X-Request-ID": "req-123"}
            )
            assert missing.status_code == 404
            assert missing.json()["error"] == "not_found"
            assert missing.json()["request_id"] == "req-123"
            assert missing.headers["X-Request-ID"] == "req-123"

            invalid = await client.post("/api/v1/experiments", json={"name": "no models"})
            assert invalid.status_code == 400
            assert invalid.json()["error"] == "invalid_config"
            assert invalid.json()["details"]["missing"] == ["model_a", "model_b"]

            experiment_id = await _create_experiment(client)
            running_delete = await client.delete(f"/api/v1/experiments/{experiment_id}")
            assert running_delete.status_code == 409

            not_concluded = await client.get(f"/api/v1/winner-selection/{experiment_id}/evaluate")
            assert not_concluded.status_code == 422
            assert not_concluded.json()["error"] == "not_ready"

            bad_group = await client.post(
                f"/api/v1/experiments/{experiment_id}/outcomes",
                json={"group": "C", "predicted_label": "dog"},
            )
            assert bad_group.status_code == 422

    @pytest.mark.asyncio
    async def test_stop_and_delete(self, container):
        async with _client() as client:
            experiment_id = await _create_experiment(client)
            await client.post(f"/api/v1/experiments/{experiment_id}/stop")

            deleted = await client.delete(f"/api/v1/experiments/{experiment_id}")
            assert deleted.status_code == 204

            listing = await client.get("/api/v1/experiments")
            assert listing.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_manual_deploy_requires_override(self, container):
        async with _client() as client:
            experiment_id = await _create_experiment(client)
            await _record(client, experiment_id, "A", 3, 1)
            await _record(client, experiment_id, "B", 1, 3)
            await client.post(f"/api/v1/experiments/{experiment_id}/stop")

            refused = await client.post(f"/api/v1/winner-selection/{experiment_id}/manual-deploy")
            assert refused.status_code == 422

            forced = await client.post(
                f"/api/v1/winner-selection/{experiment_id}/manual-deploy",
                json={"force_override": True},
            )
            assert forced.status_code == 200
            assert forced.json()["version"] == "1.0.1"


class TestVersionsApi:
    @pytest.mark.asyncio
    async def test_deploy_and_rollback(self, container):
        async with _client() as client:
            listing = await client.get("/api/v1/versions")
            assert listing.json()["current_version"] == "1.0.1"
            assert listing.json()["total_versions"] == 2

            unknown = await client.post("/api/v1/versions/9.9.9/deploy")
            assert unknown.status_code == 404

            deployed = await client.post("/api/v1/versions/1.0.2/deploy", json={})
            assert deployed.status_code == 200
            assert deployed.json()["previous_version"] == "1.0.1"

            rolled_back = await client.post("/api/v1/versions/rollback", json={"reason": "regression"})
            assert rolled_back.status_code == 200
            assert rolled_back.json()["version"] == "1.0.1"

            version = await client.get("/api/v1/versions/1.0.1")
            assert version.json()["status"] == "deployed"

        assert read_tree(container.store.active_path) == V1_FILES

    @pytest.mark.asyncio
    async def test_rollback_without_history(self, container):
        async with _client() as client:
            response = await client.post("/api/v1/versions/rollback")
        assert response.status_code == 422
        assert response.json()["error"] == "no_prior_version"

    @pytest.mark.asyncio
    async def test_backups_and_cleanup(self, container):
        async with _client() as client:
            created = await client.post("/api/v1/versions/backup", json={"reason": "nightly"})
            assert created.status_code == 201
            backups = await client.get("/api/v1/versions/backups")
            assert "nightly" in [b["reason"] for b in backups.json()["backups"]]

            snapshot = await client.post("/api/v1/versions", json={"description": "snapshot"})
            assert snapshot.status_code == 201
            assert snapshot.json()["version"] == "1.0.3"

            cleanup = await client.delete("/api/v1/versions/cleanup", params={"keep_count": 1})
            assert cleanup.json()["removed_versions"] == ["1.0.2"]

            stats = await client.get("/api/v1/versions/statistics")
            assert stats.json()["total_versions"] == 2


class TestMlopsApi:
    @pytest.mark.asyncio
    async def test_validations_feed_triggers(self, container):
        async with _client() as client:
            for i in range(10):
                await client.post(
                    "/api/v1/mlops/validations",
                    json={
                        "predicted_class": "dog" if i % 2 else "cat",
                        "is_correct": i < 7,
                        "confidence": 0.9,
                    },
                )
            triggers = await client.get("/api/v1/mlops/triggers")
            evaluation = triggers.json()["evaluation"]
            assert evaluation["should_retrain"] is True
            assert [t["type"] for t in evaluation["triggers"]] == ["ACCURACY_DROP"]

            stats = await client.get("/api/v1/mlops/statistics")
            assert stats.json()["validation"]["accuracy_rate"] == 70.0

    @pytest.mark.asyncio
    async def test_manual_retrain(self, container):
        async with _client() as client:
            response = await client.post("/api/v1/mlops/retrain", json={"reason": "new data"})
            assert response.status_code == 200
            assert response.json()["deployed"] is True

            status = await client.get("/api/v1/mlops/scheduler/status")
            assert status.json()["retraining_in_progress"] is False

        assert container.store.current_version == "1.0.3"

    @pytest.mark.asyncio
    async def test_retrain_conflict(self, container):
        container.coordinator.acquire(RETRAINING, "other")
        async with _client() as client:
            response = await client.post("/api/v1/mlops/retrain")
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    @pytest.mark.asyncio
    async def test_scheduler_config_and_control(self, container):
        async with _client() as client:
            updated = await client.put("/api/v1/mlops/scheduler/config", json={"cooldown_hours": 2})
            assert updated.json()["cooldown_hours"] == 2

            invalid = await client.put("/api/v1/mlops/scheduler/config", json={"cooldown_hours": -3})
            assert invalid.status_code == 400

            started = await client.post("/api/v1/mlops/scheduler/control", json={"action": "start"})
            assert started.json()["is_running"] is True
            stopped = await client.post("/api/v1/mlops/scheduler/control", json={"action": "stop"})
            assert stopped.json()["is_running"] is False
