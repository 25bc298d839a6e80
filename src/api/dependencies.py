"""FastAPI dependencies resolving services from the application container."""

from fastapi import Request

from src.container import ServiceContainer
from src.domains.deployment.winner_selection import WinnerSelectionService
from src.domains.experiments.orchestrator import ExperimentOrchestrator
from src.domains.retraining.scheduler import RetrainingScheduler
from src.domains.versioning.store import ModelVersionStore


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_orchestrator(request: Request) -> ExperimentOrchestrator:
    return get_container(request).orchestrator


def get_winner_selection(request: Request) -> WinnerSelectionService:
    return get_container(request).winner_selection


def get_version_store(request: Request) -> ModelVersionStore:
    return get_container(request).store


def get_scheduler(request: Request) -> RetrainingScheduler:
    return get_container(request).scheduler
