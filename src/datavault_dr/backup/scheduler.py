"""
Backup Scheduler

One asyncio timer per scheduled strategy, sleeping until the next cron
occurrence and then starting the backup as a separate tick task. Schedules
are computed when a strategy is registered or updated, never polled.
Replacing a timer leaves a tick that already started running; stop() waits
for in-flight ticks. A separate periodic task
runs the retention sweep.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from croniter import croniter

from datavault_dr.backup.models import BackupJob, BackupStrategy, utc_now
from datavault_dr.exceptions import BackupJobError, ConcurrencyLimitExceeded, InvalidSchedule, StrategyDisabled
from datavault_dr.logging import get_logger

logger = get_logger(__name__)

TickCallback = Callable[[BackupStrategy], Awaitable[BackupJob]]
SweepCallback = Callable[[], Awaitable[Any]]


def validate_cron(expression: str) -> None:
    if not croniter.is_valid(expression):
        raise InvalidSchedule(f"Invalid cron expression '{expression}'", details={"schedule": expression})


def next_fire_time(expression: str, after: datetime) -> datetime:
    """Next occurrence of a cron expression strictly after the given time."""
    validate_cron(expression)
    return croniter(expression, after).get_next(datetime)


class BackupScheduler:
    """Cron-driven backup triggers plus the periodic retention sweep."""

    def __init__(
        self,
        on_tick: TickCallback,
        sweep: SweepCallback | None = None,
        sweep_interval: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.on_tick = on_tick
        self.sweep = sweep
        self.sweep_interval = sweep_interval
        self.clock = clock

        self._strategies: dict[str, BackupStrategy] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._ticks: set[asyncio.Task] = set()
        self._next_run: dict[str, datetime] = {}
        self._last_run: dict[str, datetime] = {}
        self._last_result: dict[str, str] = {}
        self._sweep_task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule(self, strategy: BackupStrategy) -> None:
        """Register or replace the timer for a strategy."""
        if strategy.is_scheduled:
            validate_cron(strategy.schedule)
        self.unschedule(strategy.name)
        self._strategies[strategy.name] = strategy
        if self._running:
            self._start_timer(strategy)

    def unschedule(self, name: str) -> None:
        """Cancel the timer of a strategy. A tick already running is not interrupted."""
        self._strategies.pop(name, None)
        self._next_run.pop(name, None)
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()

    def _start_timer(self, strategy: BackupStrategy) -> None:
        if not strategy.is_scheduled or not strategy.enabled:
            logger.debug(f"Strategy '{strategy.name}' has no active schedule")
            return
        self._tasks[strategy.name] = asyncio.create_task(
            self._timer_loop(strategy), name=f"backup-timer-{strategy.name}"
        )

    async def _timer_loop(self, strategy: BackupStrategy) -> None:
        fired_at: datetime | None = None
        while self._running:
            now = self.clock()
            # Never fire the same occurrence twice if the sleep wakes early
            after = max(now, fired_at) if fired_at is not None else now
            next_run = next_fire_time(strategy.schedule, after)
            self._next_run[strategy.name] = next_run
            delay = max((next_run - now).total_seconds(), 0.0)
            logger.debug(f"Strategy '{strategy.name}' next run at {next_run.isoformat()}")
            await asyncio.sleep(delay)
            fired_at = next_run
            self._spawn_tick(strategy.name)

    def _spawn_tick(self, name: str) -> None:
        task = asyncio.create_task(self._run_tick(name), name=f"backup-tick-{name}")
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _run_tick(self, name: str) -> None:
        try:
            await self.fire(name)
        except Exception as e:
            logger.error(f"Scheduler tick for '{name}' errored: {e}")

    async def fire(self, name: str) -> BackupJob | None:
        """
        Run one tick for a strategy now.

        Returns the completed job, or None when the tick was skipped or the
        job failed (the failure itself is recorded in the ledger).
        """
        strategy = self._strategies.get(name)
        if strategy is None:
            logger.warning(f"Tick for unknown strategy '{name}' ignored")
            return None

        self._last_run[name] = self.clock()
        try:
            job = await self.on_tick(strategy)
        except (ConcurrencyLimitExceeded, StrategyDisabled) as e:
            self._last_result[name] = "skipped"
            logger.warning(f"Scheduled backup of '{name}' skipped: {e}")
            return None
        except BackupJobError as e:
            self._last_result[name] = "failed"
            logger.error(f"Scheduled backup of '{name}' failed: {e}")
            return None
        self._last_result[name] = "completed"
        return job

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}")

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler is already running")
            return
        self._running = True
        for strategy in self._strategies.values():
            self._start_timer(strategy)
        if self.sweep is not None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="retention-sweep")
        logger.info(f"Backup scheduler started with {len(self._tasks)} timer(s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        tasks = list(self._tasks.values())
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._ticks:
            logger.info(f"Waiting for {len(self._ticks)} running backup tick(s)")
            await asyncio.gather(*list(self._ticks), return_exceptions=True)

        self._tasks.clear()
        self._next_run.clear()
        self._sweep_task = None
        logger.info("Backup scheduler stopped")

    def get_status(self) -> dict[str, Any]:
        """Get scheduler status, one entry per strategy ordered by priority."""
        entries = []
        for strategy in sorted(self._strategies.values(), key=lambda s: (s.priority, s.name)):
            next_run = self._next_run.get(strategy.name)
            last_run = self._last_run.get(strategy.name)
            entries.append({
                "strategy": strategy.name,
                "schedule": strategy.schedule,
                "priority": strategy.priority,
                "active": strategy.name in self._tasks,
                "next_run": next_run.isoformat() if next_run else None,
                "last_run": last_run.isoformat() if last_run else None,
                "last_result": self._last_result.get(strategy.name),
            })
        return {
            "scheduler_running": self._running,
            "timers": len(self._tasks),
            "running_ticks": len(self._ticks),
            "schedules": entries,
        }
