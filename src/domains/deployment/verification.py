"""Post-deployment verification checklist.

Checks:
1. Artifact loads: the serving directory exists and is non-empty
2. Smoke inference: the classifier answers a probe image with a valid class
   and a confidence in [0, 1] (skipped when no classifier is wired in)
3. Health check: version metadata agrees with what was just deployed
"""

import time

import numpy as np
import structlog

from src.domains.deployment.models import VerificationCheck, VerificationResult
from src.domains.deployment.strategies import StrategyResult
from src.domains.versioning.artifacts import is_populated
from src.domains.versioning.models import StrategyName, VersionStatus
from src.domains.versioning.store import ModelVersionStore
from src.shared.capabilities import Classifier

logger = structlog.get_logger()

VALID_CLASSES = frozenset({"dog", "cat"})

# 1x1 white PNG
DEFAULT_PROBE_IMAGE = bytes.fromhex(
    "89504e470d0a1a0a0000000d49484452000000010000000108020000009077"
    "53de0000000c4944415408d763f8ffff3f0005fe02fea7d6a4f30000000049454e44ae426082"
)


class DeploymentVerifier:
    def __init__(
        self,
        store: ModelVersionStore,
        classifier: Classifier | None = None,
        probe_image: bytes = DEFAULT_PROBE_IMAGE,
        smoke_runs: int = 3,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._probe_image = probe_image
        self._smoke_runs = max(1, smoke_runs)

    def verify(self, result: StrategyResult) -> VerificationResult:
        latencies: list[float] = []
        checks = [
            self._check_artifact(result),
            self._check_smoke_inference(latencies),
            self._check_health(result),
        ]
        details: dict = {}
        if latencies:
            details["latency_p50_ms"] = float(np.percentile(latencies, 50))
            details["latency_p95_ms"] = float(np.percentile(latencies, 95))

        verification = VerificationResult(
            passed=all(c.passed for c in checks), checks=checks, details=details
        )
        logger.info(
            "deployment_verified",
            version=result.version,
            passed=verification.passed,
            failed_checks=verification.failed_checks,
        )
        return verification

    def _check_artifact(self, result: StrategyResult) -> VerificationCheck:
        loaded = is_populated(result.artifact_path)
        return VerificationCheck(
            name="artifact_loads",
            passed=loaded,
            detail="" if loaded else f"{result.artifact_path} is missing or empty",
        )

    def _check_smoke_inference(self, latencies: list[float]) -> VerificationCheck:
        if self._classifier is None:
            return VerificationCheck(
                name="smoke_inference", passed=True, detail="skipped: no classifier configured"
            )

        for _ in range(self._smoke_runs):
            start = time.perf_counter()
            try:
                prediction = self._classifier.predict(self._probe_image)
            except Exception as e:
                return VerificationCheck(
                    name="smoke_inference", passed=False, detail=f"prediction error: {e}"
                )
            latencies.append((time.perf_counter() - start) * 1000)

            if prediction.label not in VALID_CLASSES:
                return VerificationCheck(
                    name="smoke_inference",
                    passed=False,
                    detail=f"unexpected class {prediction.label!r}",
                )
            if not 0.0 <= prediction.confidence <= 1.0:
                return VerificationCheck(
                    name="smoke_inference",
                    passed=False,
                    detail=f"confidence out of range: {prediction.confidence}",
                )
        return VerificationCheck(name="smoke_inference", passed=True)

    def _check_health(self, result: StrategyResult) -> VerificationCheck:
        if not self._store.has_version(result.version):
            return VerificationCheck(
                name="health_check", passed=False, detail=f"version {result.version} not registered"
            )
        if result.strategy == StrategyName.CANARY:
            return VerificationCheck(name="health_check", passed=True)

        deployed = [
            v.version for v in self._store.list_versions() if v.status == VersionStatus.DEPLOYED
        ]
        healthy = self._store.current_version == result.version and deployed == [result.version]
        return VerificationCheck(
            name="health_check",
            passed=healthy,
            detail="" if healthy else (
                f"current={self._store.current_version} deployed={deployed}"
            ),
        )
