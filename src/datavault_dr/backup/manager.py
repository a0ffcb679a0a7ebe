"""
Backup and Disaster-Recovery Manager

The façade other subsystems talk to. Owns the strategy registry, the job
ledger and the failover plans, and wires the executor, restore pipeline,
retention manager, scheduler, health monitor and failover orchestrator
together.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Any

from datavault_dr.backup.events import EventChannel, EventKind, LoggingAlertSink, RecordingAlertSink
from datavault_dr.backup.executor import BackupExecutor
from datavault_dr.backup.executors import DumpLoadExecutor
from datavault_dr.backup.failover import (
    CommandStepHandler,
    FailoverOrchestrator,
    FailoverRun,
    NotificationStepHandler,
    Route53DnsSwitchHandler,
)
from datavault_dr.backup.health import BaseHealthCheck, HealthMonitor
from datavault_dr.backup.ledger import JobLedger, create_ledger
from datavault_dr.backup.metrics import BackupMetrics
from datavault_dr.backup.models import (
    BackupJob,
    BackupStrategy,
    DisasterRecoveryConfig,
    FailoverAction,
    FailoverPlan,
    HealthCheckState,
    JobStatus,
    JobTrigger,
    RestoreOptions,
    default_strategies,
    utc_now,
)
from datavault_dr.backup.restore import RestorePipeline, RestoreResult, VerificationResult
from datavault_dr.backup.retention import RetentionManager, RetentionPlan, RetentionResult
from datavault_dr.backup.scheduler import BackupScheduler
from datavault_dr.backup.storage_backends import StorageAdapter
from datavault_dr.config import DisasterRecoverySettings, RecoveryConfiguration, get_settings
from datavault_dr.exceptions import (
    ConfigurationError,
    DisasterRecoveryError,
    FailoverPlanNotFound,
    StrategyNotFound,
)
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


class BackupDRManager:
    """
    Entry point for backup, restore, retention, health and failover operations.

    Features:
    - Strategy registry with cron scheduling
    - Redundant multi-destination storage
    - Tiered retention after every backup and on a periodic sweep
    - Integrity-verified restore
    - Health monitoring with optional automatic failover
    """

    def __init__(
        self,
        settings: DisasterRecoverySettings | None = None,
        dr_config: DisasterRecoveryConfig | None = None,
        ledger: JobLedger | None = None,
        storage: StorageAdapter | None = None,
        events: EventChannel | None = None,
        executors: dict[str, DumpLoadExecutor] | None = None,
        failover_retry_delay: float = 1.0,
    ):
        self.settings = settings or get_settings()
        self.dr_config = dr_config or DisasterRecoveryConfig()
        self.work_dir = Path(self.settings.work_dir)

        self.ledger = ledger or create_ledger(
            self.settings.ledger_backend,
            path=self.settings.ledger_path,
            url=self.settings.ledger_url,
        )
        self.storage = storage or StorageAdapter()
        self.recent_events = RecordingAlertSink(max_events=200)
        self.events = events or EventChannel([LoggingAlertSink()])
        self.events.add_sink(self.recent_events)
        self.executors: dict[str, DumpLoadExecutor] = executors if executors is not None else {}
        self.metrics = BackupMetrics()

        self._strategies: dict[str, BackupStrategy] = {}
        self._plans: dict[str, FailoverPlan] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._started = False

        self.retention = RetentionManager(self.ledger, self.storage, self.events, self.metrics)
        self.executor = BackupExecutor(
            ledger=self.ledger,
            storage=self.storage,
            events=self.events,
            work_dir=self.work_dir,
            executors=self.executors,
            retention=self.retention,
            metrics=self.metrics,
            checksum_algorithm=self.settings.checksum_algorithm,
        )
        self.restore_pipeline = RestorePipeline(
            ledger=self.ledger,
            storage=self.storage,
            events=self.events,
            strategies=self.get_strategy,
            work_dir=self.work_dir,
            executors=self.executors,
            metrics=self.metrics,
        )
        self.scheduler = BackupScheduler(
            on_tick=self._scheduled_tick,
            sweep=self.prune_all,
            sweep_interval=self.settings.retention_sweep_interval,
        )
        self.health = HealthMonitor(
            events=self.events,
            failure_threshold=self.dr_config.failure_threshold,
            interval=self.dr_config.health_check_interval,
            on_degraded=self._on_service_degraded,
        )
        self.failover = FailoverOrchestrator(self.events, retry_delay=failover_retry_delay)
        self._register_default_handlers()
        if self.settings.register_default_strategies:
            for strategy in default_strategies(str(self.settings.default_backup_root)):
                self.register_strategy(strategy)

        logger.info("Backup/DR manager initialized")

    @classmethod
    def from_configuration(
        cls,
        configuration: RecoveryConfiguration,
        settings: DisasterRecoverySettings | None = None,
        **kwargs: Any,
    ) -> BackupDRManager:
        """
        Build a manager with the strategies and plans of a loaded configuration file.

        Configured strategies replace built-in strategies of the same name.
        """
        manager = cls(settings=settings, dr_config=configuration.disaster_recovery, **kwargs)
        for strategy in configuration.strategies:
            if strategy.name in manager._strategies:
                manager.update_strategy(strategy)
            else:
                manager.register_strategy(strategy)
        for plan in configuration.failover_plans:
            manager.register_failover_plan(plan)
        return manager

    def _register_default_handlers(self) -> None:
        command = CommandStepHandler()
        self.failover.register_handler(FailoverAction.NOTIFICATION, NotificationStepHandler(self.events))
        self.failover.register_handler(FailoverAction.SERVICE_RESTART, command)
        self.failover.register_handler(FailoverAction.DATABASE_FAILOVER, command)
        self.failover.register_handler(FailoverAction.CUSTOM, command)
        self.failover.register_handler(FailoverAction.DNS_SWITCH, Route53DnsSwitchHandler())

    # Strategy registry

    def register_strategy(self, strategy: BackupStrategy) -> None:
        if strategy.name in self._strategies:
            raise ConfigurationError(f"Strategy '{strategy.name}' is already registered")
        stored = strategy.copy()
        self.scheduler.schedule(stored)
        self._strategies[stored.name] = stored
        logger.info(f"Registered backup strategy '{stored.name}' ({stored.kind.value}, schedule '{stored.schedule}')")

    def update_strategy(self, strategy: BackupStrategy) -> None:
        if strategy.name not in self._strategies:
            raise StrategyNotFound(strategy.name)
        stored = strategy.copy()
        self.scheduler.schedule(stored)
        self._strategies[stored.name] = stored
        logger.info(f"Updated backup strategy '{stored.name}'")

    def remove_strategy(self, name: str) -> None:
        if name not in self._strategies:
            raise StrategyNotFound(name)
        self.scheduler.unschedule(name)
        del self._strategies[name]
        logger.info(f"Removed backup strategy '{name}'")

    def get_strategy(self, name: str) -> BackupStrategy:
        try:
            return self._strategies[name].copy()
        except KeyError:
            raise StrategyNotFound(name) from None

    def list_strategies(self) -> list[BackupStrategy]:
        return [s.copy() for s in sorted(self._strategies.values(), key=lambda s: (s.priority, s.name))]

    # Backups and restores

    async def execute_backup(
        self,
        name: str,
        trigger: JobTrigger = JobTrigger.API,
        cancel_event: asyncio.Event | None = None,
    ) -> BackupJob:
        """Run a backup of a registered strategy now, subject to its concurrency limit."""
        return await self.executor.execute(self.get_strategy(name), trigger=trigger, cancel_event=cancel_event)

    async def _scheduled_tick(self, strategy: BackupStrategy) -> BackupJob:
        return await self.executor.execute(self.get_strategy(strategy.name), trigger=JobTrigger.SCHEDULED)

    def cancel_job(self, job_id: str) -> bool:
        return self.executor.cancel(job_id)

    async def restore(self, options: RestoreOptions) -> RestoreResult:
        return await self.restore_pipeline.restore(options)

    async def verify_backup(self, job_id: str) -> VerificationResult:
        return await self.restore_pipeline.verify(job_id)

    async def get_job(self, job_id: str) -> BackupJob | None:
        return await self.ledger.get(job_id)

    async def list_jobs(
        self,
        strategy_name: str | None = None,
        status: JobStatus | None = None,
    ) -> list[BackupJob]:
        return await self.ledger.list(strategy_name=strategy_name, status=status)

    # Retention

    async def prune(self, name: str) -> RetentionResult:
        return await self.retention.prune(self.get_strategy(name))

    async def retention_plan(self, name: str) -> RetentionPlan:
        return await self.retention.plan(self.get_strategy(name))

    async def prune_all(self) -> dict[str, RetentionResult]:
        results: dict[str, RetentionResult] = {}
        for strategy in self.list_strategies():
            try:
                results[strategy.name] = await self.retention.prune(strategy)
            except Exception as e:
                logger.error(f"Retention sweep for '{strategy.name}' failed: {e}")
        return results

    # Failover

    def register_failover_plan(self, plan: FailoverPlan) -> None:
        self._plans[plan.plan_id] = plan
        logger.info(f"Registered failover plan '{plan.plan_id}' with {len(plan.steps)} step(s)")

    def get_failover_plan(self, plan_id: str) -> FailoverPlan:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise FailoverPlanNotFound(f"Failover plan '{plan_id}' is not registered") from None

    def list_failover_plans(self) -> list[FailoverPlan]:
        return list(self._plans.values())

    async def trigger_failover(self, plan_id: str) -> FailoverRun:
        """Manually run a failover plan, regardless of the auto_failover setting."""
        return await self.failover.run_plan(self.get_failover_plan(plan_id), trigger="manual")

    def validate_failover_plan(self, plan_id: str) -> dict[str, Any]:
        return self.failover.validate_plan(self.get_failover_plan(plan_id))

    async def _on_service_degraded(self, service: str, state: HealthCheckState) -> None:
        plans = [plan for plan in self._plans.values() if plan.matches(service)]
        if not self.dr_config.auto_failover:
            logger.warning(
                f"Service '{service}' degraded; auto failover disabled, "
                f"{len(plans)} plan(s) available for manual trigger"
            )
            return
        for plan in plans:
            self._spawn(self._auto_failover(plan, service))

    async def _auto_failover(self, plan: FailoverPlan, service: str) -> None:
        try:
            await self.failover.run_plan(plan, trigger=f"health:{service}")
        except DisasterRecoveryError as e:
            logger.error(f"Automatic failover '{plan.plan_id}' for '{service}' failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background(self) -> None:
        """Wait for retention and automatic failover tasks started in the background."""
        await self.executor.wait_for_background()
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # Health

    def add_health_check(self, check: BaseHealthCheck) -> None:
        self.health.add_check(check)

    async def check_health(self) -> dict[str, Any]:
        results = await self.health.check_once()
        return {name: result.to_dict() for name, result in results.items()}

    def get_system_health(self) -> dict[str, Any]:
        return {
            "status": self.health.overall_status.value,
            "services": {name: state.to_dict() for name, state in self.health.get_states().items()},
        }

    # Lifecycle

    async def recover_interrupted_jobs(self) -> int:
        """Mark jobs left pending/running by a previous process as failed."""
        recovered = 0
        for job in await self.ledger.list():
            if not job.status.is_active or job.job_id in self.executor.running_job_ids:
                continue
            job.mark_failed(DisasterRecoveryError("Interrupted: process stopped while the job was active"))
            await self.ledger.update(job)
            recovered += 1
        if recovered:
            logger.warning(f"Marked {recovered} interrupted job(s) as failed")
        return recovered

    async def start(self) -> None:
        """Recover interrupted jobs and start scheduling, retention sweeps and health monitoring."""
        if self._started:
            return
        self.settings.ensure_directories()
        await self.recover_interrupted_jobs()
        await self.scheduler.start()
        await self.health.start()
        self._started = True
        logger.info(f"Backup/DR manager started with {len(self._strategies)} strategies")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.scheduler.stop()
        await self.health.stop()
        await self.wait_for_background()
        self._started = False
        logger.info("Backup/DR manager stopped")

    # Reporting

    async def get_rpo_status(self) -> dict[str, Any]:
        """Age of the newest completed backup per strategy against the RPO target."""
        now = utc_now()
        rpo = timedelta(minutes=self.dr_config.rpo_minutes)
        report: dict[str, Any] = {}
        for strategy in self.list_strategies():
            completed = await self.ledger.list(strategy_name=strategy.name, status=JobStatus.COMPLETED)
            last = max((job.finished_at for job in completed if job.finished_at), default=None)
            age = (now - last) if last else None
            report[strategy.name] = {
                "last_backup_at": last.isoformat() if last else None,
                "age_minutes": round(age.total_seconds() / 60, 1) if age is not None else None,
                "rpo_minutes": self.dr_config.rpo_minutes,
                "compliant": age is not None and age <= rpo,
            }
        return report

    def get_metrics(self) -> dict[str, Any]:
        return self.metrics.to_dict()

    async def get_status(self) -> dict[str, Any]:
        active = [job for job in await self.ledger.list() if job.status.is_active]
        return {
            "started": self._started,
            "strategies": [s.name for s in self.list_strategies()],
            "active_jobs": [job.to_dict() for job in active],
            "health": self.get_system_health(),
            "rpo": await self.get_rpo_status(),
            "scheduler": self.scheduler.get_status(),
            "metrics": self.get_metrics(),
            "failover_plans": [plan.plan_id for plan in self._plans.values()],
            "failover_history": [run.to_dict() for run in self.failover.history[-10:]],
            "recent_events": [
                event.to_dict() for event in self.recent_events.events[-20:]
                if event.kind != EventKind.BACKUP_STARTED
            ],
        }


_backup_dr_manager: BackupDRManager | None = None


def get_backup_dr_manager() -> BackupDRManager:
    """Get the process-wide manager, built from settings and the optional config file."""
    global _backup_dr_manager
    if _backup_dr_manager is None:
        settings = get_settings()
        if settings.config_file:
            from datavault_dr.config import load_configuration

            _backup_dr_manager = BackupDRManager.from_configuration(load_configuration(settings.config_file), settings)
        else:
            _backup_dr_manager = BackupDRManager(settings=settings)
    return _backup_dr_manager
