"""Retraining scheduler: an explicit ticking loop with a stop token.

Each tick checks the daily limit and cooldown, evaluates triggers and, when
the decision rule says so, runs the retraining pipeline. At most one
retraining runs at a time system-wide; manual requests made while one is in
progress fail with ConflictError instead of queueing.
"""

import asyncio
from datetime import datetime
from typing import Any

import structlog

from src.domains.retraining.config import SchedulerConfig
from src.domains.retraining.models import (
    Priority,
    RetrainingOutcome,
    SchedulerStatistics,
    SchedulerStatus,
    TickResult,
    TriggerType,
)
from src.domains.retraining.monitor import RetrainingMonitor
from src.domains.retraining.pipeline import RetrainingPipeline
from src.domains.versioning.models import TriggeredBy
from src.shared.clock import Clock
from src.shared.coordination import RETRAINING, OperationCoordinator
from src.shared.errors import ConflictError, InvalidConfigError
from src.shared.repository import SCHEDULER_STATE, DocumentRepository

logger = structlog.get_logger()


class RetrainingScheduler:
    def __init__(
        self,
        monitor: RetrainingMonitor,
        pipeline: RetrainingPipeline,
        coordinator: OperationCoordinator,
        repository: DocumentRepository,
        clock: Clock,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._monitor = monitor
        self._pipeline = pipeline
        self._coordinator = coordinator
        self._repository = repository
        self._clock = clock

        raw = repository.load(SCHEDULER_STATE)
        self._config = (
            SchedulerConfig.from_dict(raw["config"])
            if raw and raw.get("config")
            else config or SchedulerConfig()
        )
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start the background loop. Returns False if it was already running."""
        if self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(self._stop_event))
        logger.info(
            "scheduler_started",
            interval_seconds=self._config.check_interval_seconds,
            max_per_day=self._config.max_retrainings_per_day,
            cooldown_hours=self._config.cooldown_hours,
        )
        return True

    async def stop(self) -> bool:
        """Signal the loop and wait for the current tick to finish."""
        if not self.is_running:
            return False
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info("scheduler_stopped")
        return True

    async def _run_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception("scheduler_tick_crashed", error=str(e))
                self._record_failure(str(e), TriggeredBy.AUTO)
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self._config.check_interval_seconds
                )
            except asyncio.TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def _automatic_executions(self) -> list[datetime]:
        return [
            t.timestamp
            for t in self._monitor.triggers_of_type(TriggerType.RETRAINING_EXECUTED)
            if t.data.get("triggered_by") == TriggeredBy.AUTO.value
        ]

    def retrainings_today(self) -> int:
        today = self._clock.now().date()
        return sum(1 for ts in self._automatic_executions() if ts.date() == today)

    def hours_since_last_retraining(self) -> float | None:
        executions = self._automatic_executions()
        if not executions:
            return None
        return (self._clock.now() - max(executions)).total_seconds() / 3600

    def blocked_reason(self) -> str | None:
        if self.retrainings_today() >= self._config.max_retrainings_per_day:
            return "daily retraining limit reached"
        hours = self.hours_since_last_retraining()
        if hours is not None and hours < self._config.cooldown_hours:
            return f"cooldown active ({hours:.1f}h of {self._config.cooldown_hours:g}h)"
        return None

    def can_retrain(self) -> bool:
        return self.blocked_reason() is None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _record_failure(self, error: str, triggered_by: TriggeredBy) -> None:
        self._monitor.record(
            TriggerType.RETRAINING_FAILED,
            f"Retraining failed: {error}",
            Priority.HIGH,
            {"error": error, "triggered_by": triggered_by.value},
        )

    async def _execute(
        self, options: dict[str, Any], reason: str, triggered_by: TriggeredBy
    ) -> RetrainingOutcome:
        with self._coordinator.exclusive(RETRAINING, f"{triggered_by.value}:{reason}"):
            self._monitor.record(
                TriggerType.RETRAINING_STARTED,
                f"Retraining started ({reason})",
                Priority.LOW,
                {"triggered_by": triggered_by.value},
            )
            try:
                outcome = await self._pipeline.run(options, reason, triggered_by)
            except Exception as e:
                logger.error("retraining_failed", reason=reason, error=str(e))
                self._record_failure(str(e), triggered_by)
                raise

            data = {
                "triggered_by": triggered_by.value,
                "version": outcome.version,
                "accuracy": outcome.accuracy,
                "improvement": outcome.improvement,
            }
            if outcome.deployed:
                self._monitor.record(
                    TriggerType.RETRAINING_EXECUTED,
                    f"Retraining deployed version {outcome.version}",
                    Priority.LOW,
                    data,
                )
            else:
                self._monitor.record(
                    TriggerType.RETRAINING_NOT_DEPLOYED, outcome.reason, Priority.MEDIUM, data
                )
            return outcome

    async def tick(self) -> TickResult:
        """Run one evaluation cycle. Errors are recorded, never raised."""
        now = self._clock.now()
        if not self._config.enable_auto_retraining:
            return TickResult(checked_at=now, action="disabled", reason="auto retraining disabled")

        blocked = self.blocked_reason()
        if blocked:
            logger.info("retraining_blocked", reason=blocked)
            return TickResult(checked_at=now, action="blocked", reason=blocked)

        evaluation = self._monitor.evaluate_triggers()
        if not evaluation.should_retrain:
            return TickResult(checked_at=now, action="no_retrain", evaluation=evaluation)

        reason = ", ".join(t.type.value for t in evaluation.triggers)
        try:
            outcome = await self._execute({}, reason, TriggeredBy.AUTO)
        except ConflictError as e:
            logger.info("retraining_skipped", reason=e.message)
            return TickResult(
                checked_at=now, action="conflict", reason=e.message, evaluation=evaluation
            )
        except Exception as e:
            return TickResult(checked_at=now, action="failed", reason=str(e), evaluation=evaluation)

        return TickResult(
            checked_at=now,
            action="retrained" if outcome.deployed else "not_deployed",
            reason=outcome.reason,
            evaluation=evaluation,
            outcome=outcome,
        )

    async def trigger_manual_retraining(
        self, options: dict[str, Any] | None = None, reason: str = "manual"
    ) -> RetrainingOutcome:
        """Run retraining now, skipping trigger evaluation and rate limits."""
        logger.info("manual_retraining_requested", reason=reason)
        return await self._execute(options or {}, reason, TriggeredBy.MANUAL)

    # ------------------------------------------------------------------
    # Reporting & config
    # ------------------------------------------------------------------

    def status(self) -> SchedulerStatus:
        blocked = self.blocked_reason()
        return SchedulerStatus(
            is_running=self.is_running,
            retraining_in_progress=self._coordinator.retraining_in_progress,
            last_check=self._monitor.last_check,
            config=self._config.to_dict(),
            retrainings_today=self.retrainings_today(),
            hours_since_last_retraining=self.hours_since_last_retraining(),
            can_retrain=blocked is None,
            blocked_reason=blocked,
        )

    def statistics(self) -> SchedulerStatistics:
        history = self._monitor.history()
        by_type: dict[str, int] = {}
        for trigger in history:
            by_type[trigger.type.value] = by_type.get(trigger.type.value, 0) + 1
        executed = self._monitor.triggers_of_type(TriggerType.RETRAINING_EXECUTED)
        return SchedulerStatistics(
            total_triggers=self._monitor.total_triggers,
            triggers_by_type=by_type,
            retrainings_executed=len(executed),
            retrainings_failed=by_type.get(TriggerType.RETRAINING_FAILED.value, 0),
            retrainings_not_deployed=by_type.get(TriggerType.RETRAINING_NOT_DEPLOYED.value, 0),
            retrainings_today=self.retrainings_today(),
            last_retraining=max((t.timestamp for t in executed), default=None),
        )

    def update_config(self, updates: dict[str, Any]) -> SchedulerConfig:
        try:
            candidate = self._config.updated(updates)
        except (TypeError, ValueError) as e:
            raise InvalidConfigError(str(e), details={"updates": updates}) from e
        self._repository.save(SCHEDULER_STATE, {"config": candidate.to_dict()})
        self._config = candidate
        logger.info("scheduler_config_updated", keys=sorted(updates))
        return candidate
