"""Deployment strategies: replace, canary, blue-green.

A strategy only moves artifacts and routing. Backup, verification and
rollback are driven by the winner selection service around it.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from src.domains.deployment.config import WinnerSelectionConfig
from src.domains.deployment.models import Slot
from src.domains.deployment.routing import RoutingTable
from src.domains.versioning.artifacts import replace_tree
from src.domains.versioning.models import StrategyName, TriggeredBy
from src.domains.versioning.store import ModelVersionStore
from src.shared.errors import DeploymentFailedError, InvalidConfigError

logger = structlog.get_logger()


@dataclass
class StrategyResult:
    strategy: StrategyName
    version: str
    # Artifact directory that now serves (part of) the traffic
    artifact_path: Path
    deployment_id: str | None = None
    canary_weight: float | None = None
    previous_slot: Slot | None = None


class DeploymentStrategy(Protocol):
    name: StrategyName

    def apply(self, version: str, experiment_id: str, triggered_by: TriggeredBy) -> StrategyResult:
        ...

    def revert(self, result: StrategyResult) -> None:
        ...


class ReplaceStrategy:
    """Swap the active artifact for the winner in one step."""

    name = StrategyName.REPLACE

    def __init__(self, store: ModelVersionStore) -> None:
        self._store = store

    def apply(self, version: str, experiment_id: str, triggered_by: TriggeredBy) -> StrategyResult:
        record = self._store.deploy_version(
            version,
            create_backup=False,
            strategy=self.name,
            rollback_on_failure=False,
            triggered_by=triggered_by,
        )
        return StrategyResult(
            strategy=self.name,
            version=version,
            artifact_path=self._store.active_path,
            deployment_id=record.id,
        )

    def revert(self, result: StrategyResult) -> None:
        # Artifact bytes and pointer are restored from the backup by the caller
        return None


class CanaryStrategy:
    """Declare a routing weight for the winner; the active artifact is untouched."""

    name = StrategyName.CANARY

    def __init__(
        self, store: ModelVersionStore, routing: RoutingTable, config: WinnerSelectionConfig
    ) -> None:
        self._store = store
        self._routing = routing
        self._config = config

    def apply(self, version: str, experiment_id: str, triggered_by: TriggeredBy) -> StrategyResult:
        self._store.get_version(version)
        weight = self._config.canary_percentage
        self._routing.update(
            canary_version=version,
            canary_weight=weight,
            canary_experiment_id=experiment_id,
        )
        logger.info("canary_started", version=version, experiment_id=experiment_id, weight=weight)
        return StrategyResult(
            strategy=self.name,
            version=version,
            artifact_path=self._store.version_path(version),
            canary_weight=weight,
        )

    def revert(self, result: StrategyResult) -> None:
        self._routing.clear_canary()


class BlueGreenStrategy:
    """Stage the winner in the idle slot, then flip the active-slot pointer."""

    name = StrategyName.BLUE_GREEN

    def __init__(self, store: ModelVersionStore, routing: RoutingTable) -> None:
        self._store = store
        self._routing = routing

    def slot_path(self, slot: Slot) -> Path:
        return self._store.models_dir / "slots" / slot.value

    def apply(self, version: str, experiment_id: str, triggered_by: TriggeredBy) -> StrategyResult:
        self._store.get_version(version)
        state = self._routing.state
        previous_slot = state.active_slot
        target_slot = previous_slot.other

        staged = self.slot_path(target_slot)
        try:
            replace_tree(self._store.version_path(version), staged)
        except OSError as e:
            raise DeploymentFailedError(
                f"Staging {version} into slot {target_slot} failed: {e}",
                details={"version": version, "slot": target_slot.value},
            ) from e

        record = self._store.deploy_version(
            version,
            create_backup=False,
            strategy=self.name,
            rollback_on_failure=False,
            triggered_by=triggered_by,
        )
        slots = dict(state.slots)
        slots[target_slot.value] = version
        self._routing.update(active_slot=target_slot, slots=slots)
        logger.info(
            "blue_green_flipped", version=version, from_slot=previous_slot, to_slot=target_slot
        )
        return StrategyResult(
            strategy=self.name,
            version=version,
            artifact_path=staged,
            deployment_id=record.id,
            previous_slot=previous_slot,
        )

    def revert(self, result: StrategyResult) -> None:
        if result.previous_slot is not None:
            self._routing.update(active_slot=result.previous_slot)


def build_strategy(
    name: StrategyName | str,
    store: ModelVersionStore,
    routing: RoutingTable,
    config: WinnerSelectionConfig,
) -> DeploymentStrategy:
    try:
        strategy = StrategyName(name)
    except ValueError as e:
        raise InvalidConfigError(f"Unknown deployment strategy {name!r}") from e
    if strategy == StrategyName.CANARY:
        return CanaryStrategy(store, routing, config)
    if strategy == StrategyName.BLUE_GREEN:
        return BlueGreenStrategy(store, routing)
    return ReplaceStrategy(store)
