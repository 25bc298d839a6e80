"""Semantic version store for model artifacts.

Layout under ``models_dir``::

    active/                                currently served artifact
    versions/v<semver>/                    immutable version snapshots
    backups/<version>_<ts>_<reason>/       artifact/ + backup_info.json

The metadata document (version map, current-version pointer, deployment and
rollback history) lives in the repository. Each mutation is persisted before
the in-memory copy is replaced.
"""

import os
import re
import shutil
import threading
import uuid
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from src.domains.versioning.artifacts import (
    copy_tree_atomic,
    directory_size,
    is_populated,
    replace_tree,
)
from src.domains.versioning.config import VersioningConfig, default_config
from src.domains.versioning.models import (
    BackupInfo,
    ChangeType,
    CleanupResult,
    CreateVersionRequest,
    DeploymentRecord,
    ModelVersion,
    RollbackRecord,
    StrategyName,
    TriggeredBy,
    VersionMetadata,
    VersionsInfo,
    VersionStatistics,
    VersionStatus,
)
from src.shared.clock import Clock
from src.shared.errors import (
    DeploymentFailedError,
    InvalidConfigError,
    NoPriorVersionError,
    NotFoundError,
    NotReadyError,
    PersistenceFailedError,
    RollbackFailedError,
)
from src.shared.repository import VERSION_METADATA, DocumentRepository

logger = structlog.get_logger()

BACKUP_INFO_FILE = "backup_info.json"
BACKUP_ARTIFACT_DIR = "artifact"


def parse_version(version: str) -> tuple[int, int, int]:
    parts = version.split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise InvalidConfigError(f"Invalid semantic version: {version!r}")
    major, minor, patch = (int(p) for p in parts)
    return major, minor, patch


def bump_version(version: str, change_type: ChangeType | str) -> str:
    major, minor, patch = parse_version(version)
    change = ChangeType(change_type)
    if change == ChangeType.MAJOR:
        return f"{major + 1}.0.0"
    if change == ChangeType.MINOR:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def _safe_label(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", value) or "unspecified"


class ModelVersionStore:
    def __init__(
        self,
        repository: DocumentRepository,
        clock: Clock,
        models_dir: str | Path,
        config: VersioningConfig | None = None,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._config = config or default_config
        self._lock = threading.RLock()

        self._models_dir = Path(models_dir)
        self._active_dir = self._models_dir / "active"
        self._versions_dir = self._models_dir / "versions"
        self._backups_dir = self._models_dir / "backups"
        self._versions_dir.mkdir(parents=True, exist_ok=True)
        self._backups_dir.mkdir(parents=True, exist_ok=True)

        raw = repository.load(VERSION_METADATA)
        self._metadata = VersionMetadata.model_validate(raw) if raw else VersionMetadata()
        logger.info(
            "version_store_loaded",
            current_version=self._metadata.current_version,
            versions=len(self._metadata.versions),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def current_version(self) -> str:
        return self._metadata.current_version

    @property
    def active_path(self) -> Path:
        return self._active_dir

    @property
    def models_dir(self) -> Path:
        return self._models_dir

    @property
    def metadata(self) -> VersionMetadata:
        return self._metadata.model_copy(deep=True)

    def version_path(self, version: str) -> Path:
        return self._versions_dir / f"v{version}"

    def has_version(self, version: str) -> bool:
        return version in self._metadata.versions

    def get_version(self, version: str) -> ModelVersion:
        mv = self._metadata.versions.get(version)
        if mv is None:
            raise NotFoundError(f"Version {version} not found", details={"version": version})
        return mv

    def deployed_version(self) -> ModelVersion | None:
        current = self._metadata.versions.get(self._metadata.current_version)
        if current is not None and current.status == VersionStatus.DEPLOYED:
            return current
        return None

    def list_versions(self) -> list[ModelVersion]:
        """All versions, newest first."""
        return sorted(
            self._metadata.versions.values(),
            key=lambda v: (v.created_at, parse_version(v.version)),
            reverse=True,
        )

    def deployment_history(self) -> list[DeploymentRecord]:
        return list(self._metadata.deployment_history)

    def _commit(self, metadata: VersionMetadata) -> None:
        metadata.last_update = self._clock.now()
        self._repository.save(VERSION_METADATA, metadata.model_dump(mode="json"))
        self._metadata = metadata

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def generate_next_version(self, change_type: ChangeType | str) -> str:
        """Bump from the highest known version so new versions never collide."""
        try:
            change = ChangeType(change_type)
        except ValueError as e:
            raise InvalidConfigError(
                f"Invalid change_type {change_type!r}; expected major, minor or patch"
            ) from e
        with self._lock:
            candidates = [self._metadata.current_version, *self._metadata.versions]
            if self._metadata.latest_version:
                candidates.append(self._metadata.latest_version)
            base = max(candidates, key=parse_version)
            return bump_version(base, change)

    @staticmethod
    def _coerce_request(info: CreateVersionRequest | dict[str, Any] | None) -> CreateVersionRequest:
        if info is None:
            return CreateVersionRequest()
        if isinstance(info, CreateVersionRequest):
            return info
        try:
            return CreateVersionRequest.model_validate(info)
        except ValidationError as e:
            raise InvalidConfigError(str(e)) from e

    def create_version(
        self, info: CreateVersionRequest | dict[str, Any] | None = None
    ) -> ModelVersion:
        """Snapshot the active artifact as a new version in ``created`` status."""
        request = self._coerce_request(info)
        with self._lock:
            if not is_populated(self._active_dir):
                raise NotReadyError("No active model artifact to snapshot")
            return self._register(self._active_dir, request)

    def register_artifact(
        self, source_dir: str | Path, info: CreateVersionRequest | dict[str, Any] | None = None
    ) -> ModelVersion:
        """Register an externally produced artifact directory as a new version."""
        request = self._coerce_request(info)
        source = Path(source_dir)
        if not is_populated(source):
            raise InvalidConfigError(
                f"Artifact directory {source} is missing or empty",
                details={"source_dir": str(source)},
            )
        with self._lock:
            return self._register(source, request)

    def _register(self, source: Path, request: CreateVersionRequest) -> ModelVersion:
        version = self.generate_next_version(request.change_type)
        version_dir = self.version_path(version)
        try:
            copy_tree_atomic(source, version_dir)
        except OSError as e:
            raise PersistenceFailedError(
                f"Failed to snapshot artifact for {version}: {e}", details={"version": version}
            ) from e

        size_bytes, files = directory_size(version_dir)
        model_version = ModelVersion(
            version=version,
            created_at=self._clock.now(),
            description=request.description,
            change_type=request.change_type,
            parent_version=self._metadata.current_version,
            performance=request.performance,
            size_bytes=size_bytes,
            files=files,
            retraining_reason=request.retraining_reason,
            training_metrics=request.training_metrics,
        )
        metadata = self._metadata.model_copy(deep=True)
        metadata.versions[version] = model_version
        metadata.latest_version = version
        try:
            self._commit(metadata)
        except PersistenceFailedError:
            shutil.rmtree(version_dir, ignore_errors=True)
            raise

        logger.info(
            "version_created",
            version=version,
            change_type=request.change_type.value,
            parent_version=model_version.parent_version,
            size_bytes=size_bytes,
        )
        return model_version

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def create_backup(self, version: str | None = None, reason: str = "manual") -> BackupInfo:
        """Copy the active artifact into a timestamped, reason-tagged backup.

        ``backup_info.json`` is written last inside a staging directory, and
        the directory is renamed into place only once complete.
        """
        with self._lock:
            version = version or self._metadata.current_version
            now = self._clock.now()
            name = f"{version}_{now:%Y%m%dT%H%M%S%f}_{_safe_label(reason)}"
            final = self._backups_dir / name
            staging = self._backups_dir / f".{name}.staging"
            try:
                artifact = staging / BACKUP_ARTIFACT_DIR
                if self._active_dir.exists():
                    shutil.copytree(self._active_dir, artifact)
                else:
                    artifact.mkdir(parents=True)
                size_bytes, files = directory_size(artifact)
                info = BackupInfo(
                    version=version,
                    reason=reason,
                    created_at=now,
                    path=str(final),
                    size_bytes=size_bytes,
                    files=files,
                )
                (staging / BACKUP_INFO_FILE).write_text(info.model_dump_json(indent=2))
                os.replace(staging, final)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                logger.error("backup_failed", version=version, reason=reason, error=str(e))
                raise PersistenceFailedError(
                    f"Backup of {version} failed: {e}", details={"version": version}
                ) from e

        logger.info("backup_created", version=version, reason=reason, path=str(final))
        return info

    def list_backups(self) -> list[BackupInfo]:
        """Complete backups only, newest first."""
        backups = []
        for path in self._backups_dir.iterdir():
            info_file = path / BACKUP_INFO_FILE
            if path.name.startswith(".") or not info_file.exists():
                continue
            backups.append(BackupInfo.model_validate_json(info_file.read_text()))
        return sorted(backups, key=lambda b: b.created_at, reverse=True)

    def restore_from_backup(
        self,
        backup_path: str | Path,
        reason: str = "restore",
        deployment_id: str | None = None,
    ) -> RollbackRecord:
        """Swap the backed-up artifact back in and repoint to the backed-up version."""
        path = Path(backup_path)
        info_file = path / BACKUP_INFO_FILE
        if not info_file.exists():
            raise NotFoundError(
                f"No complete backup at {path}", details={"backup_path": str(path)}
            )

        with self._lock:
            info = BackupInfo.model_validate_json(info_file.read_text())
            try:
                replace_tree(path / BACKUP_ARTIFACT_DIR, self._active_dir)
            except OSError as e:
                logger.error("restore_failed", backup_path=str(path), error=str(e))
                raise RollbackFailedError(
                    f"Restore from {path} failed: {e}", details={"backup_path": str(path)}
                ) from e

            metadata = self._metadata.model_copy(deep=True)
            from_version = metadata.current_version
            if info.version and info.version != from_version:
                self._mark_deployed(metadata, info.version)

            record = RollbackRecord(
                id=f"rb_{uuid.uuid4().hex[:12]}",
                from_version=from_version,
                to_version=info.version,
                backup_path=str(path),
                reason=reason,
                rolled_back_at=self._clock.now(),
                deployment_id=deployment_id,
            )
            metadata.rollback_history.append(record)
            self._commit(metadata)

        logger.info(
            "backup_restored",
            from_version=from_version,
            to_version=info.version,
            reason=reason,
        )
        return record

    # ------------------------------------------------------------------
    # Deploy / rollback
    # ------------------------------------------------------------------

    def _mark_deployed(self, metadata: VersionMetadata, version: str) -> None:
        now = self._clock.now()
        for mv in metadata.versions.values():
            if mv.status == VersionStatus.DEPLOYED and mv.version != version:
                mv.status = VersionStatus.ARCHIVED
        target = metadata.versions.get(version)
        if target is not None:
            target.status = VersionStatus.DEPLOYED
            target.deployed_at = now
        metadata.current_version = version

    def _recover(self, backup: BackupInfo | None, enabled: bool, deployment_id: str) -> str:
        if not enabled:
            return "disabled"
        if backup is None:
            return "no_backup"
        try:
            self.restore_from_backup(
                backup.path, reason="deployment_failed", deployment_id=deployment_id
            )
        except (NotFoundError, RollbackFailedError, PersistenceFailedError) as e:
            logger.error("rollback_failed", deployment_id=deployment_id, error=str(e))
            return "failed"
        return "restored"

    def _append_deployment(self, record: DeploymentRecord) -> None:
        metadata = self._metadata.model_copy(deep=True)
        metadata.deployment_history.append(record)
        self._commit(metadata)

    def deploy_version(
        self,
        version: str,
        create_backup: bool | None = None,
        strategy: StrategyName | str = StrategyName.REPLACE,
        rollback_on_failure: bool | None = None,
        triggered_by: TriggeredBy | str = TriggeredBy.MANUAL,
    ) -> DeploymentRecord:
        """Make ``version`` the active artifact and the current version.

        If the swap fails, the pre-deployment backup is restored (when
        enabled), a failed DeploymentRecord is appended, and
        DeploymentFailedError carries the recovery outcome. The
        current-version pointer is unchanged in that case.
        """
        if create_backup is None:
            create_backup = self._config.create_backup_on_deploy
        if rollback_on_failure is None:
            rollback_on_failure = self._config.rollback_on_failure
        strategy = StrategyName(strategy)
        triggered_by = TriggeredBy(triggered_by)

        with self._lock:
            self.get_version(version)
            previous = self._metadata.current_version
            backup = self.create_backup(previous, f"pre_deploy_{version}") if create_backup else None
            deployment_id = f"dep_{uuid.uuid4().hex[:12]}"

            try:
                replace_tree(self.version_path(version), self._active_dir)
            except OSError as e:
                logger.error(
                    "deployment_swap_failed", version=version, deployment_id=deployment_id, error=str(e)
                )
                outcome = self._recover(backup, rollback_on_failure, deployment_id)
                failed = DeploymentRecord(
                    id=deployment_id,
                    version=version,
                    previous_version=previous,
                    strategy=strategy,
                    deployed_at=self._clock.now(),
                    backup_path=backup.path if backup else None,
                    success=False,
                    error=str(e),
                    triggered_by=triggered_by,
                )
                try:
                    self._append_deployment(failed)
                except PersistenceFailedError as pe:
                    logger.error("deployment_record_failed", deployment_id=deployment_id, error=str(pe))
                raise DeploymentFailedError(
                    f"Deployment of {version} failed: {e}",
                    details={"deployment_id": deployment_id, "version": version, "rollback": outcome},
                ) from e

            record = DeploymentRecord(
                id=deployment_id,
                version=version,
                previous_version=previous,
                strategy=strategy,
                deployed_at=self._clock.now(),
                backup_path=backup.path if backup else None,
                success=True,
                triggered_by=triggered_by,
            )
            metadata = self._metadata.model_copy(deep=True)
            self._mark_deployed(metadata, version)
            metadata.deployment_history.append(record)
            try:
                self._commit(metadata)
            except PersistenceFailedError as e:
                outcome = self._recover(backup, True, deployment_id)
                raise PersistenceFailedError(
                    f"Deployment of {version} could not be recorded: {e.message}",
                    details={"deployment_id": deployment_id, "rollback": outcome},
                ) from e

        logger.info(
            "version_deployed",
            version=version,
            previous_version=previous,
            strategy=strategy.value,
            triggered_by=triggered_by.value,
            deployment_id=deployment_id,
        )
        return record

    def rollback_to_previous_version(
        self,
        reason: str = "manual_rollback",
        triggered_by: TriggeredBy | str = TriggeredBy.MANUAL,
    ) -> DeploymentRecord:
        """Redeploy the most recent successful deployment before the current one."""
        with self._lock:
            successful = [d for d in reversed(self._metadata.deployment_history) if d.success]
            if len(successful) < 2:
                raise NoPriorVersionError(
                    "At least two successful deployments are required to roll back",
                    details={"successful_deployments": len(successful)},
                )
            current = self._metadata.current_version
            target = next(
                (
                    d.version
                    for d in successful[1:]
                    if d.version != current and d.version in self._metadata.versions
                ),
                None,
            )
            if target is None:
                raise NoPriorVersionError("No earlier deployed version is still available")

            record = self.deploy_version(
                target, create_backup=True, rollback_on_failure=False, triggered_by=triggered_by
            )
            metadata = self._metadata.model_copy(deep=True)
            metadata.rollback_history.append(
                RollbackRecord(
                    id=f"rb_{uuid.uuid4().hex[:12]}",
                    from_version=current,
                    to_version=target,
                    backup_path=record.backup_path or "",
                    reason=reason,
                    rolled_back_at=self._clock.now(),
                    deployment_id=record.id,
                )
            )
            self._commit(metadata)

        logger.info("version_rolled_back", from_version=current, to_version=target, reason=reason)
        return record

    # ------------------------------------------------------------------
    # Retention & reporting
    # ------------------------------------------------------------------

    def cleanup_old_versions(self, keep_count: int | None = None) -> CleanupResult:
        """Keep the ``keep_count`` newest versions plus the current/deployed one."""
        if keep_count is None:
            keep_count = self._config.default_keep_count
        if keep_count < 0:
            raise InvalidConfigError(f"keep_count must be >= 0, got {keep_count}")

        with self._lock:
            ordered = self.list_versions()
            current = self._metadata.current_version
            removable = [
                mv.version
                for mv in ordered[keep_count:]
                if mv.version != current and mv.status != VersionStatus.DEPLOYED
            ]
            if removable:
                metadata = self._metadata.model_copy(deep=True)
                for version in removable:
                    del metadata.versions[version]
                self._commit(metadata)
                for version in removable:
                    try:
                        shutil.rmtree(self.version_path(version))
                    except OSError as e:
                        logger.warning("version_dir_cleanup_failed", version=version, error=str(e))

        result = CleanupResult(
            cleaned=len(removable), kept=len(ordered) - len(removable), removed_versions=removable
        )
        logger.info("versions_cleaned", cleaned=result.cleaned, kept=result.kept)
        return result

    def versions_info(self) -> VersionsInfo:
        metadata = self._metadata
        return VersionsInfo(
            current_version=metadata.current_version,
            total_versions=len(metadata.versions),
            versions=self.list_versions(),
            recent_deployments=metadata.deployment_history[-self._config.recent_deployments_shown :],
            recent_rollbacks=metadata.rollback_history[-self._config.recent_rollbacks_shown :],
        )

    def statistics(self) -> VersionStatistics:
        metadata = self._metadata
        versions = self.list_versions()
        by_status = {status.value: 0 for status in VersionStatus}
        for mv in versions:
            by_status[mv.status.value] += 1

        scored = [mv for mv in versions if mv.performance.accuracy is not None]
        average_accuracy = (
            sum(mv.performance.accuracy for mv in scored) / len(scored) if scored else None
        )
        best = max(scored, key=lambda mv: mv.performance.accuracy) if scored else None
        successful = sum(1 for d in metadata.deployment_history if d.success)

        return VersionStatistics(
            total_versions=len(versions),
            by_status=by_status,
            total_deployments=len(metadata.deployment_history),
            successful_deployments=successful,
            failed_deployments=len(metadata.deployment_history) - successful,
            total_rollbacks=len(metadata.rollback_history),
            average_accuracy=average_accuracy,
            best_version=best.version if best else None,
            latest_version=versions[0].version if versions else None,
            current_version=metadata.current_version,
        )
