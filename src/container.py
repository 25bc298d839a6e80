"""Composition root: builds every lifecycle service with explicit dependencies."""

from dataclasses import dataclass
from pathlib import Path

import structlog

from src.config import Settings
from src.domains.deployment.config import WinnerSelectionConfig
from src.domains.deployment.routing import RoutingTable
from src.domains.deployment.verification import DeploymentVerifier
from src.domains.deployment.winner_selection import WinnerSelectionService
from src.domains.experiments.config import ExperimentConfig
from src.domains.experiments.orchestrator import ExperimentOrchestrator
from src.domains.retraining.config import SchedulerConfig, TriggerThresholds
from src.domains.retraining.monitor import RetrainingMonitor
from src.domains.retraining.pipeline import RetrainingPipeline
from src.domains.retraining.scheduler import RetrainingScheduler
from src.domains.retraining.validation_metrics import ValidationMetricsTracker
from src.domains.versioning.config import VersioningConfig
from src.domains.versioning.store import ModelVersionStore
from src.shared.capabilities import (
    Classifier,
    DatasetPreparer,
    Trainer,
    UnconfiguredDatasetPreparer,
    UnconfiguredTrainer,
)
from src.shared.clock import Clock, SystemClock
from src.shared.coordination import OperationCoordinator
from src.shared.repository import DocumentRepository, JsonFileRepository

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    repository: DocumentRepository
    clock: Clock
    coordinator: OperationCoordinator
    orchestrator: ExperimentOrchestrator
    store: ModelVersionStore
    routing: RoutingTable
    winner_selection: WinnerSelectionService
    validation_metrics: ValidationMetricsTracker
    monitor: RetrainingMonitor
    pipeline: RetrainingPipeline
    scheduler: RetrainingScheduler


def build_container(
    settings: Settings,
    repository: DocumentRepository | None = None,
    clock: Clock | None = None,
    models_dir: str | Path | None = None,
    classifier: Classifier | None = None,
    trainer: Trainer | None = None,
    preparer: DatasetPreparer | None = None,
    winner_config: WinnerSelectionConfig | None = None,
    scheduler_config: SchedulerConfig | None = None,
) -> ServiceContainer:
    repository = repository or JsonFileRepository(settings.state_dir)
    clock = clock or SystemClock()
    coordinator = OperationCoordinator()

    if winner_config is None:
        winner_config = WinnerSelectionConfig.from_env()
        winner_config.auto_deploy_enabled = settings.auto_deploy_enabled
        winner_config.deployment_strategy = settings.deployment_strategy
        winner_config.__post_init__()
    if scheduler_config is None:
        scheduler_config = SchedulerConfig.from_env()
        scheduler_config.check_interval_seconds = settings.scheduler_check_interval_seconds
        scheduler_config.__post_init__()
    thresholds = TriggerThresholds.from_env()

    orchestrator = ExperimentOrchestrator(repository, clock, ExperimentConfig.from_env())
    store = ModelVersionStore(
        repository, clock, models_dir or settings.models_dir, VersioningConfig.from_env()
    )
    routing = RoutingTable(repository, clock)
    winner_selection = WinnerSelectionService(
        orchestrator,
        store,
        routing,
        coordinator,
        repository,
        clock,
        config=winner_config,
        verifier=DeploymentVerifier(store, classifier),
    )
    tracker = ValidationMetricsTracker(repository, clock, thresholds)
    monitor = RetrainingMonitor(tracker, store, repository, clock, thresholds)
    pipeline = RetrainingPipeline(
        store,
        preparer or UnconfiguredDatasetPreparer(),
        trainer or UnconfiguredTrainer(),
        coordinator,
    )
    scheduler = RetrainingScheduler(
        monitor, pipeline, coordinator, repository, clock, scheduler_config
    )

    logger.info(
        "services_built",
        storage=str(settings.storage_dir),
        strategy=winner_selection.config.deployment_strategy,
        classifier=classifier is not None,
        trainer=trainer is not None,
    )
    return ServiceContainer(
        repository=repository,
        clock=clock,
        coordinator=coordinator,
        orchestrator=orchestrator,
        store=store,
        routing=routing,
        winner_selection=winner_selection,
        validation_metrics=tracker,
        monitor=monitor,
        pipeline=pipeline,
        scheduler=scheduler,
    )
