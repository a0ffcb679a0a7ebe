"""
Health Monitoring

Periodic checks of the services a deployment depends on. Each service
moves between Healthy and Degraded: a passing check resets its failure
counter, a failing one increments it, and reaching the failure threshold
flips the service to Degraded exactly once per crossing. Every check runs
behind its own timeout so a slow service cannot stall the others.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiohttp
import psutil
from sqlalchemy import create_engine, text

from datavault_dr.backup.events import EventChannel, EventKind
from datavault_dr.backup.models import HealthCheckState, HealthState, utc_now
from datavault_dr.exceptions import HealthCheckTimeout
from datavault_dr.logging import get_logger

logger = get_logger(__name__)


class HealthStatus(Enum):
    """Health check status levels."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    component: str
    status: HealthStatus
    message: str
    timestamp: datetime
    response_time_ms: float = 0.0
    details: dict[str, Any] | None = None
    error_kind: str | None = None

    @property
    def passed(self) -> bool:
        return self.status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "component": self.component,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "response_time_ms": self.response_time_ms,
            "details": self.details or {},
            "error_kind": self.error_kind,
        }


class BaseHealthCheck:
    """Base class for health checks."""

    def __init__(self, name: str, timeout: float = 10.0):
        self.name = name
        self.timeout = timeout

    def _result(self, status: HealthStatus, message: str, **details: Any) -> HealthCheckResult:
        return HealthCheckResult(
            component=self.name,
            status=status,
            message=message,
            timestamp=utc_now(),
            details=details or None,
        )

    async def check(self) -> HealthCheckResult:
        """Perform health check with timeout."""
        start_time = time.monotonic()

        try:
            result = await asyncio.wait_for(self._check_health(), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = HealthCheckTimeout(f"Health check timed out after {self.timeout}s")
            result = self._result(HealthStatus.UNHEALTHY, error.message)
            result.error_kind = error.error_code
        except Exception as e:
            result = self._result(HealthStatus.UNHEALTHY, f"Health check failed: {e}")
            result.error_kind = type(e).__name__

        result.response_time_ms = (time.monotonic() - start_time) * 1000
        return result

    async def _check_health(self) -> HealthCheckResult:
        """Override this method to implement specific health check."""
        raise NotImplementedError


class CallableHealthCheck(BaseHealthCheck):
    """Wraps an async probe returning a bool (or raising) as a health check."""

    def __init__(self, name: str, probe: Callable[[], Awaitable[bool]], timeout: float = 10.0):
        super().__init__(name, timeout)
        self.probe = probe

    async def _check_health(self) -> HealthCheckResult:
        if await self.probe():
            return self._result(HealthStatus.HEALTHY, "Probe passed")
        return self._result(HealthStatus.UNHEALTHY, "Probe reported failure")


class HttpHealthCheck(BaseHealthCheck):
    """GET an application health endpoint and expect a given status code."""

    def __init__(self, name: str, url: str, expected_status: int = 200, timeout: float = 5.0):
        super().__init__(name, timeout)
        self.url = url
        self.expected_status = expected_status

    async def _check_health(self) -> HealthCheckResult:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.get(self.url) as response:
                if response.status == self.expected_status:
                    return self._result(HealthStatus.HEALTHY, f"{self.url} responded {response.status}")
                return self._result(
                    HealthStatus.UNHEALTHY,
                    f"{self.url} responded {response.status}, expected {self.expected_status}",
                    status_code=response.status,
                )


class DatabaseHealthCheck(BaseHealthCheck):
    """Health check for database connectivity."""

    def __init__(self, name: str, connection_string: str, timeout: float = 10.0):
        super().__init__(name, timeout)
        self.connection_string = connection_string
        self._engine = None

    def _select_one(self) -> Any:
        if self._engine is None:
            self._engine = create_engine(self.connection_string, pool_pre_ping=True)
        with self._engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar()

    async def _check_health(self) -> HealthCheckResult:
        value = await asyncio.to_thread(self._select_one)
        if value == 1:
            return self._result(HealthStatus.HEALTHY, "Database connection successful")
        return self._result(HealthStatus.UNHEALTHY, "Database query returned unexpected result")


class StorageHealthCheck(BaseHealthCheck):
    """Writes and removes a probe file in a backup directory."""

    def __init__(self, name: str, path: str | Path, timeout: float = 5.0):
        super().__init__(name, timeout)
        self.path = Path(path)

    def _probe(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        probe = self.path / f".health_{uuid.uuid4().hex}"
        try:
            probe.write_bytes(b"ok")
            if probe.read_bytes() != b"ok":
                raise OSError("probe file content mismatch")
        finally:
            probe.unlink(missing_ok=True)

    async def _check_health(self) -> HealthCheckResult:
        await asyncio.to_thread(self._probe)
        return self._result(HealthStatus.HEALTHY, f"{self.path} is writable")


class DiskSpaceHealthCheck(BaseHealthCheck):
    """Disk usage of the volume holding backups."""

    def __init__(
        self,
        name: str,
        path: str | Path,
        warning_percent: float = 80.0,
        critical_percent: float = 95.0,
        timeout: float = 5.0,
    ):
        super().__init__(name, timeout)
        self.path = Path(path)
        self.warning_percent = warning_percent
        self.critical_percent = critical_percent

    async def _check_health(self) -> HealthCheckResult:
        usage = await asyncio.to_thread(psutil.disk_usage, str(self.path))
        details = {"percent": usage.percent, "free_bytes": usage.free}
        if usage.percent >= self.critical_percent:
            return self._result(HealthStatus.UNHEALTHY, f"Disk {usage.percent}% full", **details)
        if usage.percent >= self.warning_percent:
            return self._result(HealthStatus.DEGRADED, f"Disk {usage.percent}% full", **details)
        return self._result(HealthStatus.HEALTHY, f"Disk {usage.percent}% full", **details)


DegradedCallback = Callable[[str, HealthCheckState], Awaitable[None]]


class HealthMonitor:
    """Polls registered checks and tracks Healthy/Degraded per service."""

    def __init__(
        self,
        events: EventChannel,
        failure_threshold: int = 3,
        interval: float = 60.0,
        on_degraded: DegradedCallback | None = None,
    ):
        self.events = events
        self.failure_threshold = failure_threshold
        self.interval = interval
        self.on_degraded = on_degraded

        self._checks: dict[str, BaseHealthCheck] = {}
        self._states: dict[str, HealthCheckState] = {}
        self._task: asyncio.Task | None = None
        self._running = False

    def add_check(self, check: BaseHealthCheck) -> None:
        self._checks[check.name] = check
        self._states.setdefault(check.name, HealthCheckState(service=check.name))

    def remove_check(self, name: str) -> None:
        self._checks.pop(name, None)
        self._states.pop(name, None)

    def get_state(self, name: str) -> HealthCheckState | None:
        state = self._states.get(name)
        return HealthCheckState(**vars(state)) if state else None

    def get_states(self) -> dict[str, HealthCheckState]:
        return {name: HealthCheckState(**vars(state)) for name, state in self._states.items()}

    @property
    def overall_status(self) -> HealthState:
        if any(s.status == HealthState.DEGRADED for s in self._states.values()):
            return HealthState.DEGRADED
        return HealthState.HEALTHY

    async def _run_check(self, check: BaseHealthCheck) -> HealthCheckResult:
        # Outer bound in case a custom check ignores its own timeout
        try:
            return await asyncio.wait_for(check.check(), timeout=check.timeout + 1.0)
        except asyncio.TimeoutError:
            error = HealthCheckTimeout(f"Health check '{check.name}' timed out")
            result = check._result(HealthStatus.UNHEALTHY, error.message)
            result.error_kind = error.error_code
            return result

    async def check_once(self) -> dict[str, HealthCheckResult]:
        """Run every check once, concurrently, and apply the results."""
        checks = list(self._checks.values())
        results = await asyncio.gather(*(self._run_check(c) for c in checks))
        for check, result in zip(checks, results):
            await self._apply(check.name, result)
        return {check.name: result for check, result in zip(checks, results)}

    async def _apply(self, name: str, result: HealthCheckResult) -> None:
        state = self._states.setdefault(name, HealthCheckState(service=name))
        state.last_checked_at = result.timestamp
        state.last_response_time_ms = result.response_time_ms

        if result.passed:
            was_degraded = state.status == HealthState.DEGRADED
            state.consecutive_failures = 0
            state.status = HealthState.HEALTHY
            state.last_error = None
            if was_degraded:
                logger.info(f"Service '{name}' recovered")
                await self.events.publish(EventKind.HEALTH_RECOVERED, service=name)
            return

        state.consecutive_failures += 1
        state.last_error = result.message
        logger.warning(
            f"Health check '{name}' failed ({state.consecutive_failures}/{self.failure_threshold}): {result.message}"
        )
        if state.status == HealthState.HEALTHY and state.consecutive_failures >= self.failure_threshold:
            state.status = HealthState.DEGRADED
            logger.error(f"Service '{name}' degraded after {state.consecutive_failures} consecutive failures")
            await self.events.publish(
                EventKind.HEALTH_DEGRADED,
                service=name,
                consecutive_failures=state.consecutive_failures,
                last_error=result.message,
                error_kind=result.error_kind,
            )
            if self.on_degraded is not None:
                try:
                    await self.on_degraded(name, HealthCheckState(**vars(state)))
                except Exception as e:
                    logger.error(f"Degraded handler for '{name}' failed: {e}")

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Health monitoring loop error: {e}")
            await asyncio.sleep(self.interval)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="health-monitor")
        logger.info(f"Health monitor started for {len(self._checks)} service(s)")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Health monitor stopped")
