"""Document repository: one JSON document per entity collection.

Services talk to :class:`DocumentRepository` only, so the JSON-file backend
can be replaced by an embedded or networked store without touching business
logic. Every ``save`` is durable before it returns; callers mutate their
in-memory cache only after a successful save.
"""

import copy
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from .errors import PersistenceFailedError

logger = structlog.get_logger()

# Collection names
EXPERIMENTS = "experiments"
ASSIGNMENTS = "assignments"
VERSION_METADATA = "version_metadata"
WINNER_DEPLOYMENTS = "winner_deployments"
WINNER_SELECTION_CONFIG = "winner_selection_config"
TRIGGER_HISTORY = "trigger_history"
VALIDATION_METRICS = "validation_metrics"
ROUTING_STATE = "routing_state"
SCHEDULER_STATE = "scheduler_state"


class DocumentRepository(ABC):
    """Load/save a JSON-compatible document per collection."""

    @abstractmethod
    def load(self, collection: str) -> Any | None:
        """Return the stored document, or None if the collection is empty."""

    @abstractmethod
    def save(self, collection: str, document: Any) -> None:
        """Durably replace the document. Raises PersistenceFailedError."""

    @abstractmethod
    def delete(self, collection: str) -> None:
        """Remove the collection entirely."""


class JsonFileRepository(DocumentRepository):
    """Stores each collection as ``<root>/<collection>.json``.

    Writes go to a temp file in the same directory, are fsynced, then
    atomically renamed over the previous document, so a crash leaves either
    the old or the new document on disk, never a torn one.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, collection: str) -> Path:
        return self._root / f"{collection}.json"

    def load(self, collection: str) -> Any | None:
        path = self._path(collection)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def save(self, collection: str, document: Any) -> None:
        path = self._path(collection)
        with self._lock:
            tmp_fd, tmp_path = tempfile.mkstemp(
                dir=str(self._root), prefix=f".{collection}.", suffix=".tmp"
            )
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as tmp_file:
                    json.dump(document, tmp_file, indent=2, sort_keys=True)
                    tmp_file.flush()
                    os.fsync(tmp_file.fileno())
                os.replace(tmp_path, path)
            except (OSError, TypeError, ValueError) as e:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                logger.error("document_save_failed", collection=collection, error=str(e))
                raise PersistenceFailedError(
                    f"Failed to persist '{collection}': {e}",
                    details={"collection": collection},
                ) from e

    def delete(self, collection: str) -> None:
        with self._lock:
            self._path(collection).unlink(missing_ok=True)


class InMemoryRepository(DocumentRepository):
    """Dict-backed repository. Documents are round-tripped through JSON so
    non-serializable state fails the same way it would on disk."""

    def __init__(self) -> None:
        self._documents: dict[str, str] = {}
        self._lock = threading.Lock()
        self.fail_on_save: set[str] = set()

    def load(self, collection: str) -> Any | None:
        raw = self._documents.get(collection)
        return None if raw is None else json.loads(raw)

    def save(self, collection: str, document: Any) -> None:
        if collection in self.fail_on_save:
            raise PersistenceFailedError(
                f"Failed to persist '{collection}': injected failure",
                details={"collection": collection},
            )
        try:
            raw = json.dumps(copy.deepcopy(document), sort_keys=True)
        except (TypeError, ValueError) as e:
            raise PersistenceFailedError(f"Failed to persist '{collection}': {e}") from e
        with self._lock:
            self._documents[collection] = raw

    def delete(self, collection: str) -> None:
        with self._lock:
            self._documents.pop(collection, None)
