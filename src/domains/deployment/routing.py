"""Persisted routing declaration (canary weight, blue/green active slot).

This service does not proxy traffic; the inference layer reads this state to
decide which artifact answers a request.
"""

import threading
from typing import Any

import structlog

from src.domains.deployment.models import RoutingState
from src.shared.clock import Clock
from src.shared.repository import ROUTING_STATE, DocumentRepository

logger = structlog.get_logger()


class RoutingTable:
    def __init__(self, repository: DocumentRepository, clock: Clock) -> None:
        self._repository = repository
        self._clock = clock
        self._lock = threading.Lock()
        raw = repository.load(ROUTING_STATE)
        self._state = RoutingState.model_validate(raw) if raw else RoutingState()

    @property
    def state(self) -> RoutingState:
        return self._state.model_copy(deep=True)

    def update(self, **changes: Any) -> RoutingState:
        with self._lock:
            data = {**self._state.model_dump(mode="json"), **changes}
            data["updated_at"] = self._clock.now()
            candidate = RoutingState.model_validate(data)
            self._repository.save(ROUTING_STATE, candidate.model_dump(mode="json"))
            self._state = candidate
        logger.info("routing_updated", **{k: str(v) for k, v in changes.items()})
        return candidate.model_copy(deep=True)

    def clear_canary(self) -> RoutingState:
        return self.update(canary_version=None, canary_weight=0.0, canary_experiment_id=None)
