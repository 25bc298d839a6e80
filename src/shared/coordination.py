"""System-wide mutual exclusion for deployments and retrainings.

Experiments are independent and lock per experiment; the deployed-version
pointer and the retraining flag are the two process-wide critical sections.
Both are guarded by one coordinating lock. A second request for a held slot
is rejected with ConflictError, never queued.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

from .errors import ConflictError

logger = structlog.get_logger()

DEPLOYMENT = "deployment"
RETRAINING = "retraining"


class OperationCoordinator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: dict[str, str] = {}

    def is_held(self, slot: str) -> bool:
        with self._lock:
            return slot in self._held

    @property
    def deployment_in_progress(self) -> bool:
        return self.is_held(DEPLOYMENT)

    @property
    def retraining_in_progress(self) -> bool:
        return self.is_held(RETRAINING)

    def acquire(self, slot: str, owner: str) -> None:
        with self._lock:
            if slot in self._held:
                logger.warning(
                    "operation_conflict", slot=slot, owner=owner, held_by=self._held[slot]
                )
                raise ConflictError(
                    f"A {slot} is already in progress",
                    details={"slot": slot, "held_by": self._held[slot]},
                )
            self._held[slot] = owner

    def release(self, slot: str) -> None:
        with self._lock:
            self._held.pop(slot, None)

    @contextmanager
    def exclusive(self, slot: str, owner: str) -> Iterator[None]:
        self.acquire(slot, owner)
        try:
            yield
        finally:
            self.release(slot)
