"""
Unit Tests for the Backup Scheduler
"""
import asyncio
from datetime import datetime, timezone

import pytest

from conftest import SlowSQLiteDumpExecutor
from datavault_dr.backup.executor import BackupExecutor
from datavault_dr.backup.models import BackupStrategy, JobStatus, JobTrigger, StrategyKind
from datavault_dr.backup.scheduler import BackupScheduler, next_fire_time, validate_cron
from datavault_dr.exceptions import ConcurrencyLimitExceeded, DumpFailed, InvalidSchedule


class TestCron:

    def test_validate(self):
        validate_cron("0 2 * * *")
        with pytest.raises(InvalidSchedule):
            validate_cron("every night")
        with pytest.raises(InvalidSchedule):
            validate_cron("61 2 * * *")

    def test_next_fire_time_is_strictly_after(self):
        at_two = datetime(2024, 3, 30, 2, 0, tzinfo=timezone.utc)
        assert next_fire_time("0 2 * * *", at_two) == datetime(2024, 3, 31, 2, 0, tzinfo=timezone.utc)

    def test_weekly_full(self):
        friday = datetime(2024, 3, 29, 12, 0, tzinfo=timezone.utc)
        assert next_fire_time("0 2 * * 0", friday) == datetime(2024, 3, 31, 2, 0, tzinfo=timezone.utc)


class TestBackupScheduler:
    """Test timer registration and tick handling."""

    def setup_method(self):
        self.ticks = []

    async def on_tick(self, strategy):
        self.ticks.append(strategy.name)
        return strategy.name

    def test_invalid_schedule_rejected(self):
        scheduler = BackupScheduler(on_tick=self.on_tick)
        with pytest.raises(InvalidSchedule):
            scheduler.schedule(BackupStrategy(name="bad", schedule="not cron"))

    @pytest.mark.asyncio
    async def test_timers_only_for_scheduled_enabled_strategies(self):
        scheduler = BackupScheduler(on_tick=self.on_tick)
        scheduler.schedule(BackupStrategy(name="nightly", schedule="0 2 * * *"))
        scheduler.schedule(BackupStrategy(name="manual", kind=StrategyKind.MANUAL))
        scheduler.schedule(BackupStrategy(name="paused", schedule="0 3 * * *", enabled=False))

        await scheduler.start()
        try:
            await asyncio.sleep(0)
            status = scheduler.get_status()
            assert status["timers"] == 1
            assert {s["strategy"]: s["active"] for s in status["schedules"]} == {
                "nightly": True, "manual": False, "paused": False,
            }
            nightly = next(s for s in status["schedules"] if s["strategy"] == "nightly")
            assert nightly["next_run"] is not None
        finally:
            await scheduler.stop()
        assert scheduler.get_status()["timers"] == 0

    @pytest.mark.asyncio
    async def test_status_ordered_by_priority(self):
        scheduler = BackupScheduler(on_tick=self.on_tick)
        scheduler.schedule(BackupStrategy(name="low", schedule="0 4 * * *", priority=5))
        scheduler.schedule(BackupStrategy(name="high", schedule="0 1 * * *", priority=1))

        assert [s["strategy"] for s in scheduler.get_status()["schedules"]] == ["high", "low"]

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self):
        scheduler = BackupScheduler(on_tick=self.on_tick)
        await scheduler.start()
        try:
            scheduler.schedule(BackupStrategy(name="nightly", schedule="0 2 * * *"))
            first = scheduler._tasks["nightly"]
            scheduler.schedule(BackupStrategy(name="nightly", schedule="30 2 * * *"))
            await asyncio.gather(first, return_exceptions=True)
            assert first.cancelled()
            assert scheduler._tasks["nightly"] is not first
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_timer_fires_when_due(self):
        clock_times = iter([
            datetime(2024, 3, 31, 1, 59, 59, 950000, tzinfo=timezone.utc),
            datetime(2024, 3, 31, 2, 0, 0, tzinfo=timezone.utc),
        ])
        fired = asyncio.Event()

        async def on_tick(strategy):
            fired.set()

        scheduler = BackupScheduler(on_tick=on_tick, clock=lambda: next(clock_times, datetime(2024, 4, 1, tzinfo=timezone.utc)))
        scheduler.schedule(BackupStrategy(name="nightly", schedule="0 2 * * *"))
        await scheduler.start()
        try:
            await asyncio.wait_for(fired.wait(), timeout=2)
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_fire_outcomes(self):
        async def on_tick(strategy):
            if strategy.name == "busy":
                raise ConcurrencyLimitExceeded(strategy.name, 1, 1)
            raise DumpFailed("disk full")

        scheduler = BackupScheduler(on_tick=on_tick)
        scheduler.schedule(BackupStrategy(name="busy", schedule="0 2 * * *"))
        scheduler.schedule(BackupStrategy(name="broken", schedule="0 2 * * *"))

        assert await scheduler.fire("busy") is None
        assert await scheduler.fire("broken") is None
        assert await scheduler.fire("unknown") is None
        results = {s["strategy"]: s["last_result"] for s in scheduler.get_status()["schedules"]}
        assert results == {"busy": "skipped", "broken": "failed"}

    @pytest.mark.asyncio
    async def test_retention_sweep_runs_periodically(self):
        sweeps = []

        async def sweep():
            sweeps.append(1)

        scheduler = BackupScheduler(on_tick=self.on_tick, sweep=sweep, sweep_interval=0.05)
        await scheduler.start()
        try:
            await asyncio.sleep(0.18)
        finally:
            await scheduler.stop()
        assert len(sweeps) >= 2


class TestScheduledBackups:
    """Scheduled ticks drive real backups."""

    @pytest.mark.asyncio
    async def test_daily_full_backup_tick(self, ledger, storage, events, make_strategy, temp_dir):
        executor = BackupExecutor(ledger, storage, events, temp_dir / "work")
        strategy = make_strategy(schedule="0 2 * * *")

        async def on_tick(s):
            return await executor.execute(s, trigger=JobTrigger.SCHEDULED)

        scheduler = BackupScheduler(on_tick=on_tick)
        scheduler.schedule(strategy)

        first = await scheduler.fire(strategy.name)
        second = await scheduler.fire(strategy.name)

        assert first.status == second.status == JobStatus.COMPLETED
        assert first.trigger == JobTrigger.SCHEDULED
        assert first.locations and second.locations
        # Unchanged database, so the artifact bytes are identical
        assert first.checksum == second.checksum
        assert len(await ledger.list(status=JobStatus.COMPLETED)) == 2

    @pytest.mark.asyncio
    async def test_update_during_running_tick_lets_backup_finish(self, ledger, storage, events, make_strategy, temp_dir):
        slow = SlowSQLiteDumpExecutor(delay=0.5)
        executor = BackupExecutor(ledger, storage, events, temp_dir / "work", executors={"sqlite": slow})
        clock_times = iter([
            datetime(2024, 3, 31, 1, 59, 59, 950000, tzinfo=timezone.utc),
            datetime(2024, 3, 31, 2, 0, 0, tzinfo=timezone.utc),
        ])

        async def on_tick(s):
            return await executor.execute(s, trigger=JobTrigger.SCHEDULED)

        scheduler = BackupScheduler(
            on_tick=on_tick, clock=lambda: next(clock_times, datetime(2024, 4, 1, tzinfo=timezone.utc))
        )
        scheduler.schedule(make_strategy())
        await scheduler.start()
        try:
            async def dump_started():
                while slow.dumps == 0:
                    await asyncio.sleep(0.01)

            await asyncio.wait_for(dump_started(), timeout=2)
            scheduler.schedule(make_strategy(priority=5))
            assert scheduler.get_status()["running_ticks"] == 1
        finally:
            await scheduler.stop()

        jobs = await ledger.list()
        assert [(job.status, job.error) for job in jobs] == [(JobStatus.COMPLETED, None)]
        assert scheduler.get_status()["running_ticks"] == 0
